"""Social graph state machine: identity, notifications, friends and messaging.

Import the concrete services from their modules (``fortized.social.friends``
and so on) or build them together with
:func:`fortized.social.services.build_services`.
"""

"""Mutation relay and realtime synchronization for connected sessions."""

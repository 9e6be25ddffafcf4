"""Social graph, messaging and realtime sync core for Fortized."""

__version__ = "0.3.0"

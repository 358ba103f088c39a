"""Client-side cache synchronisation for the matchmaking app."""

__version__ = "0.1.0"

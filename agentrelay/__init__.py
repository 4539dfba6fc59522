"""Agent relay: event coordination between users' external agents."""

__version__ = "0.1.0"

"""Converge a MongoDB replica set's membership to a declared state."""

__version__ = "1.0.0"

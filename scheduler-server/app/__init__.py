"""Device task scheduling server."""

__version__ = "0.3.0"

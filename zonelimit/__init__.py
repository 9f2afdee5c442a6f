"""Sliding-window HTTP rate limiting by zone and key, with WSGI middleware and shared state."""

__version__ = "0.1.0"
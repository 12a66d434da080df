"""Bazaar negotiation and reservation core."""

__version__ = "0.1.0"

"""Persistent recurring-transaction scheduler for the student bank."""

__version__ = "0.3.0"

"""Incremental AI analysis of WhatsApp sales conversations."""

__version__ = "0.1.0"

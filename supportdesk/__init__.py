"""Encrypted assistant-chat cache and support-ticket synchronizer."""

__version__ = "1.0.0"

"""Burrow - tunnel lifecycle coordination for a reverse-tunnel service."""

__version__ = "0.1.0"

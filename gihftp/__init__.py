"""Fetch GIH DNS query logs, merge them per day and ship them to an archive host."""

__version__ = "2.0.0"

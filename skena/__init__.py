"""Skena: AI-performed stories with a director's hand on the wheel."""

__version__ = "0.1.0"

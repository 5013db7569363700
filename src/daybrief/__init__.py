"""Daybrief: calendar change detection and daily schedule notifications."""

__version__ = "0.1.0"

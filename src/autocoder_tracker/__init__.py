"""Autocoder Tracker: work-item tracking and GitHub reconciliation."""

__version__ = "0.1.0"

"""Perioperative instructions service."""

__version__ = "0.1.0"

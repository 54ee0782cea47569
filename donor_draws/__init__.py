"""Donation draws for Discord: tip correlation, entry allocation and weighted winner selection."""

__version__ = "2.1.0"

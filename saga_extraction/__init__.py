"""Saga entity extraction: chunk text, extract candidates, screen duplicates, materialize."""

__version__ = "0.1.0"

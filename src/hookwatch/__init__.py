"""Hookwatch: webhook reliability and health monitoring."""

__version__ = "0.1.0"

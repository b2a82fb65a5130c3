"""Dental clinic appointment booking and constraint validation engine."""

__version__ = "0.1.0"

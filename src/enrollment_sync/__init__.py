"""Enrollment verification and conversion coordinator."""

__version__ = "0.1.0"

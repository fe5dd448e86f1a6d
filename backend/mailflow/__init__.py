"""Mailflow: email flow and scheduling engine."""

__version__ = "1.0.0"

"""Bulk pull request merge orchestration service."""

__version__ = "0.1.0"

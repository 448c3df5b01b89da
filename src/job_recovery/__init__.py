"""Failure classification, bounded retry, and recovery for long-running jobs."""

__version__ = "0.1.0"

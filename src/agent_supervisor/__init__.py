"""Supervisor that drives autonomous coding agents through a bounded task queue."""

__version__ = "0.1.0"

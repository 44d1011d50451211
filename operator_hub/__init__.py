"""Operator Hub - task router and worker status service."""

__version__ = "0.4.0"

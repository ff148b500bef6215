"""Coordinated bulk writes into a remote bulk-job service."""

__version__ = "0.1.0"

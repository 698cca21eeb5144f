"""Iceblink sync server: backup and sync backend for the Iceblink 2FA manager."""

__version__ = "0.1.0"

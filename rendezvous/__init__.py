"""Rendezvous server for the Friendly Backup peer network."""

__version__ = "0.1.0"

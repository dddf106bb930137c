"""Jetstream relay: resumable feed consumer with queued webhook delivery."""

__version__ = "0.1.0"

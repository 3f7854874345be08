"""Incremental mailbox mirroring into local EML archives."""

__version__ = "0.1.0"

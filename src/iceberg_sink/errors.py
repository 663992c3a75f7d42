"""Base exception for the sink."""

from __future__ import annotations


class IcebergSinkError(Exception):
    """Root of every error raised by the commit protocol."""

"""Shared helpers."""

from gantry.utils.retry import RetryConfig, retry_sync

__all__ = [
    "RetryConfig",
    "retry_sync",
]

"""Error types and failure classification for the indexer."""

import asyncio

import aiohttp

# Substrings of RPC error messages that mark a transient infrastructure fault
TRANSIENT_ERROR_MARKERS = (
    "rate limit",
    "too many requests",
    "429",
    "exceeded",
    "timeout",
    "timed out",
    "econnrefused",
    "connection refused",
    "network error",
)


class IndexerError(Exception):
    """Base class for indexer errors."""


class TransientRpcFault(IndexerError):
    """Rate limit, timeout or network failure; safe to retry."""


class PermanentConfigFault(IndexerError):
    """Chain configuration that can never index (bad contract, wrong chain, ...)."""


class PersistenceFault(IndexerError):
    """A storage write failed and its transaction was rolled back."""


def is_transient(error: BaseException) -> bool:
    """
    Check whether an error is a transient infrastructure fault.

    Args:
        error: The exception raised by an RPC or storage call

    Returns:
        True if retrying (or switching endpoint) may succeed
    """
    if isinstance(error, TransientRpcFault):
        return True
    if isinstance(error, (PermanentConfigFault, PersistenceFault)):
        return False
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError, aiohttp.ClientConnectionError)):
        return True

    error_str = str(error).lower()
    return any(marker in error_str for marker in TRANSIENT_ERROR_MARKERS)

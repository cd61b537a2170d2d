"""
Error taxonomy for the sticker index.

Store failures are wrapped into these classes at the point where the
sqlite3 error is caught, so callers never have to import sqlite3 to decide
whether an operation can be retried.
"""


class StickerSearchError(Exception):
    """Base class for every error raised by the sticker index."""

    retryable = False


class StickerIndexError(StickerSearchError):
    """Failure while writing to the index."""


class StoreUnavailableError(StickerIndexError):
    """I/O or connection failure. Retry with backoff."""

    retryable = True


class ConflictError(StickerIndexError):
    """Write contention on the store. Retry immediately."""

    retryable = True


class InvalidRecordError(StickerIndexError):
    """Record is missing a required field. The caller must fix the input."""


class QueryError(StickerSearchError):
    """Failure while answering a query."""


class QueryTimeoutError(QueryError):
    """Caller-supplied deadline exceeded. Queries are read-only, so safe to retry."""

    retryable = True


class AuthorizationError(StickerSearchError):
    """Wrong admin secret or a user without tagging permission."""

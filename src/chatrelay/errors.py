"""Error taxonomy for chat turns.

Errors raised before the event stream opens map to HTTP status codes.
Once the stream has started, failures only surface in-band as ``[ERROR]``.
"""


class ChatRelayError(Exception):
    """Base class for all chatrelay errors."""

    status_code: int = 500


class ValidationError(ChatRelayError):
    """Request is missing a conversation ID or message."""

    status_code = 400


class NotFoundError(ChatRelayError):
    """Conversation does not exist or is not owned by the caller."""

    status_code = 404


class PersistenceError(ChatRelayError):
    """The conversation store could not complete a read or write."""

    status_code = 503


class ConflictError(PersistenceError):
    """The conversation changed or vanished underneath a save."""

    status_code = 409


class UpstreamError(ChatRelayError):
    """The completion service failed, timed out or returned a malformed reply."""

    status_code = 502


class SummarizationError(ChatRelayError):
    """Summarization call failed. Never surfaced to callers."""

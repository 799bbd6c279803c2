"""
Error classes for bulkextract.

These error types enable retry classification at extraction boundaries:
- TransientError: Safe to retry (dropped connections, reset streams)
- PermanentError: Do not retry (failed batches, corrupted stream position,
  invalid configuration)

Only the stream reader retries, and only TransientStreamError-class failures.
Everything else propagates to the caller with the job context attached.
"""

from typing import Optional


class BulkExtractError(Exception):
    """Base exception for bulkextract.

    Carries optional extraction context which is appended to the message
    so that a failure can be traced back to a job, batch and result.
    """

    def __init__(
        self,
        message: str,
        *,
        entity: Optional[str] = None,
        job_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        result_id: Optional[str] = None,
    ):
        self.message = message
        self.entity = entity
        self.job_id = job_id
        self.batch_id = batch_id
        self.result_id = result_id
        super().__init__(self._render())

    @property
    def context(self) -> dict[str, str]:
        """Non-empty context fields, in a stable order."""
        fields = {
            "entity": self.entity,
            "job_id": self.job_id,
            "batch_id": self.batch_id,
            "result_id": self.result_id,
        }
        return {k: v for k, v in fields.items() if v is not None}

    def _render(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"


class TransientError(BulkExtractError):
    """
    Transient error - safe to retry.

    Examples:
    - Connection reset while streaming a result
    - Read timeout on a result stream
    """
    pass


class PermanentError(BulkExtractError):
    """
    Permanent error - do not retry.

    Examples:
    - A batch reached the Failed state
    - Replay after reconnect did not land on the expected row
    - Invalid configuration
    """
    pass


class TransientStreamError(TransientError):
    """I/O failure while reading an open result stream.

    The reader raises this once its reconnect budget is spent; the original
    I/O error is chained as ``__cause__``.
    """

    def __init__(self, message: str, *, attempts: int = 0, **context):
        self.attempts = attempts
        super().__init__(message, **context)


class JobFailure(PermanentError):
    """A batch of the bulk job reached the Failed state."""

    def __init__(self, message: str, *, state_message: Optional[str] = None, **context):
        self.state_message = state_message
        if state_message:
            message = f"{message} error - {state_message}"
        super().__init__(message, **context)


class RepositionMismatch(PermanentError):
    """Replay after reconnecting did not reproduce the last delivered row."""

    def __init__(self, message: str, *, skipped: int = 0, **context):
        self.skipped = skipped
        super().__init__(message, **context)


class ConfigurationError(PermanentError):
    """Invalid or missing configuration settings."""
    pass


class QueryCompositionError(PermanentError):
    """A predicate cannot be appended to the query text."""
    pass


class RemoteResponseError(PermanentError):
    """A REST query response is missing fields the caller depends on."""
    pass

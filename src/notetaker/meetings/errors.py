"""Failure taxonomy for bot directory calls and meeting persistence.

Every external or storage failure is classified into one of these types so
callers can decide between "no new information this tick", "conclusively
failed" and "already handled elsewhere" without inspecting raw exceptions.
"""

from __future__ import annotations

PAYLOAD_SAMPLE_LIMIT = 500


class ReconciliationError(Exception):
    """Base class for classified reconciliation failures."""


class TransientNetworkError(ReconciliationError):
    """Timeout, transport failure or 5xx from the bot directory.

    Attributes:
        operation: Bot directory operation that failed.
        status_code: HTTP status when the server answered, else None.
    """

    def __init__(self, operation: str, detail: str, status_code: int | None = None) -> None:
        self.operation = operation
        self.detail = detail
        self.status_code = status_code
        suffix = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"{operation} failed transiently{suffix}: {detail}")


class PermanentApiError(ReconciliationError):
    """4xx response from the bot directory.

    Attributes:
        operation: Bot directory operation that failed.
        status_code: HTTP status code.
        body: Truncated response body.
    """

    def __init__(self, operation: str, status_code: int, body: str = "") -> None:
        self.operation = operation
        self.status_code = status_code
        self.body = body[:PAYLOAD_SAMPLE_LIMIT]
        super().__init__(f"{operation} rejected with HTTP {status_code}: {self.body}")

    @property
    def not_found(self) -> bool:
        """True when the referenced resource conclusively does not exist."""
        return self.status_code == 404


class DataIntegrityViolation(ReconciliationError):
    """A storage uniqueness constraint rejected a write.

    Raised when a second non-cancelled meeting for the same calendar event,
    or a second meeting for the same bot, would be persisted. Callers treat
    it as "already claimed".
    """

    def __init__(self, entity: str, detail: str) -> None:
        self.entity = entity
        self.detail = detail
        super().__init__(f"{entity} integrity violation: {detail}")


class ParseError(ReconciliationError):
    """Unexpected shape in a status history or transcript payload.

    Attributes:
        payload_sample: First characters of the offending payload.
    """

    def __init__(self, what: str, payload: object = None) -> None:
        self.what = what
        self.payload_sample = repr(payload)[:PAYLOAD_SAMPLE_LIMIT]
        super().__init__(f"unparseable {what}")

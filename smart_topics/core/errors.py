"""
Error classification for topic rebuilds.

Every fatal failure carries a machine-readable kind, a human remediation hint,
and free-form details (raw provider text lives under ``details["raw"]``) so the
calling layer can map it to a response without parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classification of engine failures."""

    CONFIGURATION = "configuration"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    PROVIDER = "provider"
    INSUFFICIENT_DATA = "insufficient_data"
    NAMING = "naming"
    PERSISTENCE = "persistence"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"


_HTTP_STATUS = {
    ErrorKind.CONFIGURATION: 400,
    ErrorKind.PAYLOAD_TOO_LARGE: 400,
    ErrorKind.INSUFFICIENT_DATA: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.PROVIDER: 502,
    ErrorKind.NAMING: 502,
    ErrorKind.PERSISTENCE: 500,
}


class TopicEngineError(Exception):
    """Classified failure raised by the pipeline stages, the store and topic curation."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        hint: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.hint = hint
        self.details = details or {}

    @property
    def http_status(self) -> int:
        """HTTP status suggested for this classification."""
        return _HTTP_STATUS.get(self.kind, 500)

    @property
    def is_retryable(self) -> bool:
        """Whether a scheduler may retry the run later without a config change."""
        return self.kind in (ErrorKind.PROVIDER, ErrorKind.PERSISTENCE)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and run reports."""
        return {
            "error": self.message,
            "kind": self.kind.value,
            "hint": self.hint,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"TopicEngineError(kind={self.kind.value!r}, message={self.message!r})"

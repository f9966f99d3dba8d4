"""Failure kinds raised by the state store, synchronizer and orchestrator."""

from __future__ import annotations

from typing import Literal, Optional


ErrorKind = Literal["validation", "upstream", "malformed_response", "storage", "lock_timeout"]


class DevBeaverError(Exception):
    kind: ErrorKind = "storage"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InputValidationError(DevBeaverError):
    """Missing or unusable input; rejected before any state access."""

    kind: ErrorKind = "validation"


class UpstreamError(DevBeaverError):
    """Generation service unreachable, rate limited or timed out."""

    kind: ErrorKind = "upstream"
    retryable = True


class MalformedResponseError(DevBeaverError):
    kind: ErrorKind = "malformed_response"
    retryable = True

    def __init__(self, message: str, raw_text: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw_text = raw_text


class StorageError(DevBeaverError):
    kind: ErrorKind = "storage"


class LockTimeoutError(DevBeaverError):
    kind: ErrorKind = "lock_timeout"
    retryable = True

    def __init__(self, message: str, waited_seconds: float = 0.0) -> None:
        super().__init__(message)
        self.waited_seconds = waited_seconds

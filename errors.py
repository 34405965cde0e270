# errors.py
from __future__ import annotations

from typing import Any, Optional


class ConfigError(ValueError):
    """Desired-state input could not be parsed. Raised before any remote call."""


class ApiError(Exception):
    """A resource API call failed."""

    def __init__(self, message: str, stderr: str = "", returncode: int = 1):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class NotFound(ApiError):
    pass


class AlreadyExists(ApiError):
    pass


class TransientApiError(ApiError):
    """Rate limit, operation in progress, resource not ready, 5xx."""


class ReconcileFailure(Exception):
    """A reconcile step gave up. Carries enough to resume from."""

    def __init__(
        self,
        kind: str,
        name: str,
        last_state: Optional[Any] = None,
        cause: Optional[BaseException] = None,
        message: str = "",
    ):
        self.kind = kind
        self.name = name
        self.last_state = last_state
        self.cause = cause
        super().__init__(message or f"{kind} {name} failed: {cause}")

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "kind": self.kind,
            "name": self.name,
            "last_state": self.last_state,
            "cause": str(self.cause) if self.cause else None,
        }


class RetryExhausted(ReconcileFailure):
    pass


class ActionFailed(ReconcileFailure):
    pass


class WaitTimeout(ReconcileFailure):
    pass


class IllegalTransition(RuntimeError):
    """A node instance was asked to move to a state its current state cannot reach."""


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientApiError)

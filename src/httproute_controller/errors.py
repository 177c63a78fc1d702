"""
Error taxonomy for the controller.

- IntentValidationError: the annotations describe an impossible intent.
  Terminal; reported as an event and never retried.
- RetryableError (StoreError, ConflictError, DeadlineExceeded): anything
  the next invocation may succeed at. Propagated to the caller, which owns
  requeue and backoff.
- ConfigurationError: mandatory engine configuration is missing. Raised
  at construction so the controller never starts misconfigured.
"""

from __future__ import annotations

from typing import Optional


class ControllerError(Exception):
    """Base class for controller errors."""


class ConfigurationError(ControllerError, ValueError):
    """Mandatory configuration is missing or empty."""


class IntentValidationError(ControllerError):
    """The Service's annotations cannot be turned into a valid intent."""

    def __init__(self, reason: str, namespace: str = "", name: str = ""):
        self.reason = reason
        self.namespace = namespace
        self.name = name
        super().__init__(reason)


class RetryableError(ControllerError):
    """A failure the caller should answer with a requeue."""


class StoreError(RetryableError):
    """The object store rejected or failed a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class ConflictError(StoreError):
    """Optimistic concurrency check failed (HTTP 409)."""

    def __init__(self, message: str):
        super().__init__(message, status=409)


class DeadlineExceeded(RetryableError):
    """The invocation ran out of its time budget."""

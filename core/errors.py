# ============================================================================
# ERROR TAXONOMY
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Closed error kinds for store, lock and workflow failures
# PURPOSE: Distinguish recoverable races from real failures without isinstance chains
# CREATED: 17 OCT 2026
# ============================================================================
"""
Error Taxonomy

Every error the control plane reasons about carries an ErrorKind.
Callers branch on `classify(exc)` instead of catching individual
exception classes from a generic channel:

    kind = classify(exc)
    if kind is ErrorKind.CONFLICT:
        return  # lost a race, re-read next cycle

Kinds:
- NOT_FOUND: target absent (often a valid outcome, e.g. already deleted)
- CONFLICT: optimistic-concurrency or lease race
- ALREADY_LOCKED: business conflict surfaced to the caller
- INVALID_INPUT: malformed request data
- TASK_FAILED: a downstream task reported failure
- INSTANCE_NOT_FOUND: downstream system no longer knows the instance
- INTERNAL: anything else
"""

import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Closed set of error kinds."""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    ALREADY_LOCKED = "already_locked"
    INVALID_INPUT = "invalid_input"
    TASK_FAILED = "task_failed"
    INSTANCE_NOT_FOUND = "instance_not_found"
    INTERNAL = "internal"


class BrokerError(Exception):
    """Base exception for the control plane."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFound(BrokerError):
    """Resource (or blob) does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str, resource_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.resource_id = resource_id
        super().__init__(message, details)


class Conflict(BrokerError):
    """Version mismatch or duplicate create."""

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str, resource_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.resource_id = resource_id
        super().__init__(message, details)


class AlreadyLocked(BrokerError):
    """
    Target is held by an active lock.

    Carries the existing lock's metadata, not the caller's.
    """

    kind = ErrorKind.ALREADY_LOCKED

    def __init__(
        self,
        resource_id: str,
        created_at: Optional[datetime] = None,
        lock_for_operation: Optional[str] = None,
    ):
        self.resource_id = resource_id
        self.created_at = created_at
        self.lock_for_operation = lock_for_operation
        message = f"Service Instance {resource_id} __Locked__ at {created_at} for {lock_for_operation}"
        super().__init__(
            message,
            details={
                "resourceId": resource_id,
                "createdAt": created_at.isoformat() if created_at else None,
                "lockForOperation": lock_for_operation,
            },
        )


class InvalidInput(BrokerError):
    """Malformed request data. Fatal to the current handler invocation."""

    kind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        self.field = field
        self.value = value
        super().__init__(message, details={"field": field} if field else None)


class TaskFailed(BrokerError):
    """A downstream task (errand, director job, disk operation) failed."""

    kind = ErrorKind.TASK_FAILED

    def __init__(self, message: str, phase: Optional[str] = None, task_id: Optional[str] = None):
        self.phase = phase
        self.task_id = task_id
        super().__init__(message, details={"phase": phase, "taskId": task_id})


class ServiceInstanceNotFound(BrokerError):
    """The downstream system reports the service instance is gone."""

    kind = ErrorKind.INSTANCE_NOT_FOUND

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Service instance {instance_id} not found", details={"instanceId": instance_id})


def classify(exc: BaseException) -> ErrorKind:
    """Map any exception onto the closed ErrorKind set."""
    if isinstance(exc, BrokerError):
        return exc.kind
    if isinstance(exc, AssertionError):
        return ErrorKind.INVALID_INPUT
    return ErrorKind.INTERNAL


def error_payload(exc: BaseException) -> Dict[str, Any]:
    """
    Serialize an exception into the document stored in status.error.

    Args:
        exc: Exception raised by a handler

    Returns:
        Dict with code, message, description and details
    """
    kind = classify(exc)
    message = str(exc)
    payload = {
        "code": kind.value,
        "message": message,
        "description": f"{type(exc).__name__}: {message}",
        "details": getattr(exc, "details", None) or {},
    }
    if kind is ErrorKind.INTERNAL:
        payload["details"] = {"traceback": "".join(traceback.format_exception_only(type(exc), exc)).strip()}
    return payload


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "ErrorKind",
    "BrokerError",
    "NotFound",
    "Conflict",
    "AlreadyLocked",
    "InvalidInput",
    "TaskFailed",
    "ServiceInstanceNotFound",
    "classify",
    "error_payload",
]

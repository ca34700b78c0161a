# ============================================================================
# BASE REPOSITORY - ERROR HANDLING AND LOGGING PATTERNS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Infrastructure - Base repository patterns
# PURPOSE: Common error translation and logging for store implementations
# CREATED: 03 FEB 2026
# UPDATED: 17 OCT 2026 - Broker error taxonomy pass-through
# ============================================================================
"""
Base Repository Patterns

Abstract base class that provides common infrastructure for stores:
- Consistent error handling with context managers
- Standardized logging

Broker errors (NotFound, Conflict, ...) already carry a decision-relevant
kind and pass through untouched. Anything else raised by a driver is
logged with context and wrapped in RepositoryError (kind INTERNAL).
"""

import logging
from abc import ABC
from contextlib import contextmanager
from typing import Any, Dict, Optional

from core.errors import BrokerError, ErrorKind

logger = logging.getLogger(__name__)


class RepositoryError(BrokerError):
    """Base exception for unexpected storage failures."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, operation: str = None, entity_id: str = None):
        self.operation = operation
        self.entity_id = entity_id
        super().__init__(message, details={"operation": operation, "entityId": entity_id})


class AsyncBaseRepository(ABC):
    """
    Abstract base repository with common patterns.

    Provides:
    - Error context manager for consistent error handling
    - Standardized logging

    Subclasses implement storage-specific operations.
    """

    def __init__(self):
        """Initialize base repository."""
        self.logger = logging.getLogger(self.__class__.__name__)
        self.logger.debug(f"{self.__class__.__name__} initialized")

    @contextmanager
    def _error_context(self, operation: str, entity_id: Optional[str] = None):
        """
        Context manager for consistent error handling.

        Args:
            operation: Human-readable description of the operation
            entity_id: Optional entity ID for context

        Example:
            with self._error_context("resource creation", resource_id):
                await self._execute_insert(resource)
        """
        try:
            yield
        except BrokerError:
            # Already classified, just re-raise
            raise
        except Exception as e:
            error_msg = f"{operation} failed"
            if entity_id:
                error_msg += f" for {entity_id}"
            error_msg += f": {e}"
            self.logger.error(error_msg)
            raise RepositoryError(error_msg, operation=operation, entity_id=entity_id) from e

    def _log_operation(
        self,
        success: bool,
        operation: str,
        entity_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log operation result with consistent formatting.

        Format:
            Success: "operation: entity_id | details"
            Failure: "operation failed: entity_id | details"
        """
        short_id = entity_id[:16] + "..." if len(entity_id) > 16 else entity_id

        if success:
            msg = f"{operation}: {short_id}"
        else:
            msg = f"{operation} failed: {short_id}"

        if details:
            msg += f" | {details}"

        if success:
            self.logger.debug(msg)
        else:
            self.logger.warning(msg)


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "AsyncBaseRepository",
    "RepositoryError",
]

# ============================================================================
# RESTORE WORKFLOW MODULE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Multi-phase restore state machine
# PURPOSE: Phase handlers, trigger-side operator and completion poller
# CREATED: 17 OCT 2026
# ============================================================================
"""
Restore Workflow Module

Usage:
    from operators.restore import RestoreService, RestoreOperator, RestoreStatusPoller

    service = RestoreService(store, director, cloud, metadata_store, catalog)
    operator = RestoreOperator(store, service)
    poller = RestoreStatusPoller(store, service)
    await operator.init()
    await poller.init()
"""

from .service import RestoreService, select_errand_instances, polled_states, update_history
from .operator import RestoreOperator
from .poller import RestoreStatusPoller

__all__ = [
    "RestoreService",
    "RestoreOperator",
    "RestoreStatusPoller",
    "select_errand_instances",
    "polled_states",
    "update_history",
]

# ============================================================================
# OPERATORS MODULE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Watch-driven reconcilers and task pollers
# PURPOSE: Drive resources from requested state to terminal state
# CREATED: 17 OCT 2026
# ============================================================================
"""
Operators Module

Reconcilers (BaseOperator subclasses) handle states that need work
issued; pollers (TaskPoller subclasses) follow the issued work until it
completes. Both talk to the resource store only.

Usage:
    from operators import DeploymentOperator, DirectorTaskPoller

    operator = DeploymentOperator(store, services)
    await operator.init()
"""

from .base import BaseOperator, Handler
from .poller import PollerHandle, PollerRegistry, PollerScheduler, TaskPoller
from .unlock_poller import UnlockPoller
from .deployment import DeploymentOperator, DeploymentServices, DirectorTaskPoller
from .restore import RestoreOperator, RestoreService, RestoreStatusPoller, select_errand_instances

__all__ = [
    "BaseOperator",
    "Handler",
    "PollerHandle",
    "PollerRegistry",
    "PollerScheduler",
    "TaskPoller",
    "UnlockPoller",
    "DeploymentOperator",
    "DeploymentServices",
    "DirectorTaskPoller",
    "RestoreOperator",
    "RestoreService",
    "RestoreStatusPoller",
    "select_errand_instances",
]

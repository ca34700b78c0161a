# ============================================================================
# SERVICES MODULE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Catalog and service lookup
# PURPOSE: Plan catalog and per-plan service cache
# CREATED: 29 JAN 2026
# UPDATED: 17 OCT 2026 - Broker catalog services
# ============================================================================
"""
Services Module

Catalog lookup and the keyed cache for per-plan services. Process
wiring lives in services.control_plane and is imported from there.

Usage:
    from services import PlanCatalogService, ServiceCache

    catalog = PlanCatalogService()
    plan = catalog.get_plan(plan_id)
"""

from .plan_catalog import PlanCatalogService
from .service_cache import ServiceCache

__all__ = [
    "PlanCatalogService",
    "ServiceCache",
]

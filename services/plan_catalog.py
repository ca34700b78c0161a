# ============================================================================
# PLAN CATALOG SERVICE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Core - Service and plan definitions
# PURPOSE: Load and cache the service catalog
# CREATED: 29 JAN 2026
# UPDATED: 17 OCT 2026 - Service catalog replaces workflow definitions
# ============================================================================
"""
Plan Catalog Service

Loads service and plan definitions from YAML and provides lookup.
Caches the loaded catalog.

The catalog file defaults to catalog/catalog.yaml, overridable with
PLAN_CATALOG_PATH:

    services:
      - id: <service id>
        name: postgresql
        restore_operation: {filesystem_path, instance_group, errands}
        plans:
          - id: <plan id>
            name: small
            parallel_operations: [backup]
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.errors import NotFound
from core.models import Plan, ServiceDefinition

logger = logging.getLogger(__name__)


class PlanCatalogService:
    """Service for loading and looking up catalog services and plans."""

    def __init__(self, catalog_path: Optional[str] = None):
        """
        Initialize plan catalog.

        Args:
            catalog_path: YAML catalog file.
                          Defaults to PLAN_CATALOG_PATH or ./catalog/catalog.yaml
        """
        path = catalog_path or os.environ.get("PLAN_CATALOG_PATH")
        if path:
            self.catalog_path = Path(path)
        else:
            self.catalog_path = Path(__file__).parent.parent / "catalog" / "catalog.yaml"

        self._services: Dict[str, ServiceDefinition] = {}
        self._plans: Dict[str, Plan] = {}
        self._loaded = False

    def load_all(self) -> int:
        """
        Load the catalog file.

        Returns:
            Number of plans loaded
        """
        if not self.catalog_path.exists():
            logger.warning(f"Catalog file not found: {self.catalog_path}")
            self._loaded = True
            return 0

        with open(self.catalog_path) as f:
            data = yaml.safe_load(f) or {}

        self.load_dict(data)
        logger.info(
            f"Loaded {len(self._services)} services and {len(self._plans)} plans from {self.catalog_path}"
        )
        return len(self._plans)

    def load_dict(self, data: Dict[str, Any]) -> None:
        """Load catalog entries from an already-parsed document."""
        for service_data in data.get("services", []):
            service_data = dict(service_data)
            plans = service_data.pop("plans", [])
            service = ServiceDefinition(**service_data)
            self._services[service.id] = service
            for plan_data in plans:
                plan = Plan(service_id=service.id, **plan_data)
                self._plans[plan.id] = plan
                logger.debug(f"Loaded plan: {service.name}/{plan.name} ({plan.id})")
        self._loaded = True

    def get_plan(self, plan_id: str) -> Plan:
        """
        Get a plan by ID.

        Raises:
            NotFound if the plan is not in the catalog
        """
        if not self._loaded:
            self.load_all()
        plan = self._plans.get(plan_id)
        if plan is None:
            raise NotFound(f"Plan not found: {plan_id}", resource_id=plan_id)
        return plan

    def get_service(self, service_id: str) -> ServiceDefinition:
        """
        Get a service by ID.

        Raises:
            NotFound if the service is not in the catalog
        """
        if not self._loaded:
            self.load_all()
        service = self._services.get(service_id)
        if service is None:
            raise NotFound(f"Service not found: {service_id}", resource_id=service_id)
        return service

    def list_plans(self) -> List[Plan]:
        if not self._loaded:
            self.load_all()
        return list(self._plans.values())

    def reload(self) -> int:
        """
        Reload the catalog from disk.

        Returns:
            Number of plans loaded
        """
        self._services.clear()
        self._plans.clear()
        self._loaded = False
        return self.load_all()


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["PlanCatalogService"]

# ============================================================================
# CATALOG, CACHE, CONFIG AND ERROR TESTS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Tests - Supporting services
# PURPOSE: Verify plan catalog, service cache, defaults and error taxonomy
# CREATED: 17 OCT 2026
# ============================================================================
"""
Catalog, Cache, Config and Error Tests

Covers:
1. PlanCatalogService: YAML load, lookups, NotFound
2. ServiceCache: reuse, LRU eviction, stats
3. Defaults: env overrides, per-operation TTLs
4. Error taxonomy: classify() and error_payload()
5. Restore options: tenant id resolution

Run with:
    pytest tests/test_catalog_and_config.py -v
"""

import pytest

from core.config import Defaults, LockDefaults, get_defaults, reset_defaults
from core.errors import (
    AlreadyLocked,
    Conflict,
    ErrorKind,
    InvalidInput,
    NotFound,
    ServiceInstanceNotFound,
    TaskFailed,
    classify,
    error_payload,
)
from core.models import RestoreOptions
from services import PlanCatalogService, ServiceCache


CATALOG_YAML = """
services:
  - id: svc-pg
    name: postgresql
    restore_operation:
      filesystem_path: /var/vcap/store/restore.json
      instance_group: [postgresql, witness]
      errands:
        base_backup_restore:
          name: pg-restore
          instances: 0
    plans:
      - id: plan-small
        name: small
        parallel_operations: [backup]
      - id: plan-large
        name: large
"""


# ============================================================================
# PLAN CATALOG
# ============================================================================

class TestPlanCatalog:

    @pytest.fixture
    def catalog(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(CATALOG_YAML)
        catalog = PlanCatalogService(catalog_path=str(path))
        assert catalog.load_all() == 2
        return catalog

    def test_plan_lookup(self, catalog):
        plan = catalog.get_plan("plan-small")
        assert plan.service_id == "svc-pg"
        assert plan.manager == "director"
        assert plan.allows_parallel("backup")
        assert not catalog.get_plan("plan-large").allows_parallel("backup")

    def test_service_restore_config(self, catalog):
        restore = catalog.get_service("svc-pg").restore_operation
        assert restore.instance_group == ["postgresql", "witness"]
        assert restore.errands["base_backup_restore"].instances == 0
        assert "point_in_time" not in restore.errands

    def test_unknown_ids_raise_not_found(self, catalog):
        with pytest.raises(NotFound):
            catalog.get_plan("nope")
        with pytest.raises(NotFound):
            catalog.get_service("nope")

    def test_missing_file_loads_nothing(self, tmp_path):
        catalog = PlanCatalogService(catalog_path=str(tmp_path / "absent.yaml"))
        assert catalog.load_all() == 0
        assert catalog.list_plans() == []

    def test_env_path(self, tmp_path, monkeypatch):
        path = tmp_path / "env-catalog.yaml"
        path.write_text(CATALOG_YAML)
        monkeypatch.setenv("PLAN_CATALOG_PATH", str(path))
        catalog = PlanCatalogService()
        assert catalog.get_plan("plan-large").name == "large"

    def test_bundled_catalog_loads(self, monkeypatch):
        monkeypatch.delenv("PLAN_CATALOG_PATH", raising=False)
        catalog = PlanCatalogService()
        assert catalog.load_all() >= 1


# ============================================================================
# SERVICE CACHE
# ============================================================================

class TestServiceCache:

    def test_reuses_and_evicts_least_recent(self):
        cache = ServiceCache(max_size=2)
        built = []

        def factory(name):
            def build():
                built.append(name)
                return object()
            return build

        a = cache.get_or_create("a", factory("a"))
        cache.get_or_create("b", factory("b"))
        assert cache.get_or_create("a", factory("a")) is a
        cache.get_or_create("c", factory("c"))

        assert "a" in cache
        assert "b" not in cache
        assert built == ["a", "b", "c"]
        assert cache.stats == {"size": 2, "max_size": 2, "hits": 1, "misses": 3}

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            ServiceCache(max_size=0)


# ============================================================================
# DEFAULTS
# ============================================================================

class TestDefaults:

    def test_operation_ttls(self):
        locks = LockDefaults()
        assert locks.ttl_for("backup") == 600
        assert locks.ttl_for("restore") == 86400
        assert locks.ttl_for("unbind") == 86400
        assert locks.ttl_for(None) == 86400

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("LOCK_BACKUP_TTL_SECONDS", "120")
        monkeypatch.setenv("POLLER_INTERVAL_SECONDS", "10")
        monkeypatch.setenv("RESOURCE_STORE_BACKEND", "MEMORY")
        reset_defaults()
        try:
            defaults = get_defaults()
            assert defaults.locks.ttl_for("backup") == 120
            assert defaults.poller.lease_freshness_seconds == 15
            assert defaults.store.backend == "memory"
            assert get_defaults() is defaults
        finally:
            reset_defaults()

    def test_plain_defaults(self):
        defaults = Defaults()
        assert defaults.poller.poll_interval_seconds == 50
        assert defaults.restore.history_retention_days == 60
        assert defaults.watch.error_delay_seconds == 30


# ============================================================================
# ERRORS
# ============================================================================

class TestErrors:

    @pytest.mark.parametrize("exc, kind", [
        (NotFound("x"), ErrorKind.NOT_FOUND),
        (Conflict("x"), ErrorKind.CONFLICT),
        (AlreadyLocked("inst-1"), ErrorKind.ALREADY_LOCKED),
        (InvalidInput("x"), ErrorKind.INVALID_INPUT),
        (TaskFailed("x"), ErrorKind.TASK_FAILED),
        (ServiceInstanceNotFound("inst-1"), ErrorKind.INSTANCE_NOT_FOUND),
        (AssertionError("x"), ErrorKind.INVALID_INPUT),
        (KeyError("x"), ErrorKind.INTERNAL),
    ])
    def test_classify(self, exc, kind):
        assert classify(exc) is kind

    def test_payload_carries_details(self):
        payload = error_payload(TaskFailed("BOSH_STOP failed", phase="BOSH_STOP", task_id="101"))
        assert payload["code"] == "task_failed"
        assert payload["message"] == "BOSH_STOP failed"
        assert payload["description"] == "TaskFailed: BOSH_STOP failed"
        assert payload["details"] == {"phase": "BOSH_STOP", "taskId": "101"}

    def test_internal_payload_has_traceback_summary(self):
        payload = error_payload(RuntimeError("boom"))
        assert payload["code"] == "internal"
        assert payload["details"]["traceback"] == "RuntimeError: boom"

    def test_already_locked_message(self):
        exc = AlreadyLocked("inst-1", lock_for_operation="backup")
        assert "__Locked__" in str(exc)
        assert exc.details["lockForOperation"] == "backup"


# ============================================================================
# RESTORE OPTIONS
# ============================================================================

class TestRestoreOptions:

    @pytest.mark.parametrize("context, arguments, tenant", [
        ({"space_guid": "space-1", "namespace": "ns"}, {}, "space-1"),
        ({"namespace": "ns"}, {}, "ns"),
        ({}, {"space_guid": "space-2"}, "space-2"),
        ({}, {}, None),
    ])
    def test_tenant_id(self, context, arguments, tenant):
        options = RestoreOptions.model_validate({
            "restore_guid": "r",
            "instance_guid": "i",
            "service_id": "s",
            "plan_id": "p",
            "context": context,
            "arguments": {"backup_guid": "b", **arguments},
        })
        assert options.tenant_id == tenant

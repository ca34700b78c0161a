# ============================================================================
# METADATA STORE TESTS
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Tests - Backup and restore metadata files
# PURPOSE: Verify file naming, restore file merge and backup listing
# CREATED: 17 OCT 2026
# ============================================================================
"""
Metadata Store Tests

Covers:
1. Restore file path from tenant / service / instance
2. put_file routes restore vs backup documents
3. patch_restore_file deep-merges and stamps finished_at
4. Backup lookup (latest wins, exact backup_guid match at any prefix depth) and filtered listing
5. Selector validation

Run with:
    pytest tests/test_metadata_store.py -v
"""

import asyncio

import pytest

from core.errors import InvalidInput, NotFound
from infrastructure.storage import BlobMetadataStore, InMemoryMetadataStore

SELECTOR = {"tenant_id": "space-1", "service_id": "svc-pg", "instance_guid": "inst-1"}


class TestRestoreFile:

    def test_put_then_patch(self):
        async def scenario():
            store = InMemoryMetadataStore()
            await store.put_file(SELECTOR, {
                "operation": "restore",
                "state": "processing",
                "restore_dates": {"succeeded": ["2026-10-01T00:00:00+00:00"], "failed": []},
            })
            assert list(store.files) == ["space-1/restore/svc-pg.inst-1.json"]

            merged = await store.patch_restore_file(SELECTOR, {"state": "succeeded", "last_restore_guid": "r-1"})

            assert merged["state"] == "succeeded"
            assert merged["restore_dates"]["succeeded"] == ["2026-10-01T00:00:00+00:00"]
            assert merged["finished_at"]
            assert merged["started_at"]
            assert await store.get_restore_file(SELECTOR) == merged

        asyncio.run(scenario())

    def test_missing_restore_file(self):
        async def scenario():
            store = InMemoryMetadataStore()
            with pytest.raises(NotFound):
                await store.get_restore_file(SELECTOR)
            with pytest.raises(NotFound):
                await store.patch_restore_file(SELECTOR, {"state": "failed"})

        asyncio.run(scenario())

    def test_selector_requires_tenant(self):
        async def scenario():
            store = InMemoryMetadataStore()
            with pytest.raises(InvalidInput):
                await store.get_restore_file({**SELECTOR, "tenant_id": None})

        asyncio.run(scenario())


class TestBackupFiles:

    def test_latest_backup_wins_and_listing_filters(self):
        async def scenario():
            store = InMemoryMetadataStore()
            for started_at, state in (("2026-10-01T00:00:00Z", "failed"), ("2026-10-02T00:00:00Z", "succeeded")):
                await store.put_file(SELECTOR, {
                    "operation": "backup",
                    "backup_guid": "bkp-1",
                    "started_at": started_at,
                    "state": state,
                })
            await store.put_file(SELECTOR, {
                "operation": "backup",
                "backup_guid": "bkp-2",
                "started_at": "2026-09-01T00:00:00Z",
                "state": "succeeded",
            })

            latest = await store.get_backup_file({**SELECTOR, "backup_guid": "bkp-1"})
            assert latest["state"] == "succeeded"

            succeeded = await store.list_backup_files(
                {"tenant_id": "space-1"}, predicate=lambda d: d["state"] == "succeeded"
            )
            assert [d["backup_guid"] for d in succeeded] == ["bkp-2", "bkp-1"]

            with pytest.raises(NotFound):
                await store.get_backup_file({**SELECTOR, "backup_guid": "bkp-9"})

        asyncio.run(scenario())

    def test_backup_guid_matched_without_full_prefix(self):
        """A lookup by tenant (and service) alone still returns the requested backup."""
        async def scenario():
            store = InMemoryMetadataStore()
            for backup_guid, started_at in (("aaa-wanted", "2026-10-01T00:00:00Z"),
                                            ("zzz-other", "2026-10-03T00:00:00Z")):
                await store.put_file(SELECTOR, {
                    "operation": "backup",
                    "backup_guid": backup_guid,
                    "started_at": started_at,
                    "state": "succeeded",
                })
            await store.put_file({**SELECTOR, "instance_guid": "inst-2"}, {
                "operation": "backup",
                "backup_guid": "aaa-wanted",
                "started_at": "2026-10-02T00:00:00.250000+00:00",
                "state": "failed",
            })

            by_tenant = await store.get_backup_file({"tenant_id": "space-1", "backup_guid": "aaa-wanted"})
            assert by_tenant["state"] == "failed"

            by_service = await store.get_backup_file({
                "tenant_id": "space-1", "service_id": "svc-pg", "backup_guid": "zzz-other",
            })
            assert by_service["backup_guid"] == "zzz-other"

            by_instance = await store.get_backup_file({**SELECTOR, "backup_guid": "aaa-wanted"})
            assert by_instance["state"] == "succeeded"

            with pytest.raises(NotFound):
                await store.get_backup_file({"tenant_id": "space-1", "service_id": "svc-mysql",
                                             "backup_guid": "aaa-wanted"})

        asyncio.run(scenario())

    def test_parse_backup_path(self):
        keys = InMemoryMetadataStore.parse_backup_path(
            "space-1/backup/svc-pg.inst-1.bkp-1.2026-10-17T12:00:00.123456+00:00.json"
        )
        assert keys == {
            "tenant_id": "space-1",
            "service_id": "svc-pg",
            "instance_guid": "inst-1",
            "backup_guid": "bkp-1",
            "started_at": "2026-10-17T12:00:00.123456+00:00",
        }
        assert InMemoryMetadataStore.parse_backup_path("space-1/restore/svc-pg.inst-1.json") is None
        assert InMemoryMetadataStore.parse_backup_path("space-1/backup/svc-pg.json") is None


class TestBlobMetadataStore:

    def test_requires_account(self, monkeypatch):
        monkeypatch.delenv("BROKER_STORAGE_ACCOUNT", raising=False)
        with pytest.raises(ValueError):
            BlobMetadataStore.from_env()

    def test_from_env_defers_client_creation(self, monkeypatch):
        monkeypatch.setenv("BROKER_STORAGE_ACCOUNT", "brokerstore")
        store = BlobMetadataStore.from_env()
        assert store.container == "broker-metadata"
        assert store._container_client is None
        assert store.restore_path(SELECTOR) == "space-1/restore/svc-pg.inst-1.json"

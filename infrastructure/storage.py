# ============================================================================
# BLOB STORAGE INFRASTRUCTURE
# ============================================================================
# EPOCH: 1 - BROKER CONTROL PLANE
# STATUS: Infrastructure - Azure Blob Storage operations
# PURPOSE: Backup/restore metadata files for the restore workflow
# CREATED: 31 JAN 2026
# UPDATED: 17 OCT 2026 - Metadata file store replaces streaming helpers
# ============================================================================
"""
Blob Storage Infrastructure

Backup and restore metadata documents, one JSON file per operation:

    {tenant_id}/restore/{service_id}.{instance_guid}.json
    {tenant_id}/backup/{service_id}.{instance_guid}.{backup_guid}.{started_at}.json

Provides:
- BlobMetadataStore: Azure Blob Storage (DefaultAzureCredential or
  ManagedIdentityCredential, clients created lazily)
- InMemoryMetadataStore: dict-backed, for tests and local runs

Both raise core.errors.NotFound for missing files.

Azure SDK calls are blocking; they run in the default executor so the
event loop keeps serving watches and pollers.
"""

import asyncio
import functools
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.errors import InvalidInput, NotFound
from core.models import deep_merge

logger = logging.getLogger(__name__)


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require(selector: Dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if not selector.get(k)]
    if missing:
        raise InvalidInput(f"Metadata selector is missing {', '.join(missing)}", field=missing[0])


# ============================================================================
# FILE NAMING AND OPERATIONS
# ============================================================================

class _MetadataFileStore(ABC):
    """
    File naming and document semantics shared by every backend.

    Subclasses provide raw JSON read/write/list by path.
    """

    @staticmethod
    def restore_path(selector: Dict[str, Any]) -> str:
        _require(selector, "tenant_id", "service_id", "instance_guid")
        return f"{selector['tenant_id']}/restore/{selector['service_id']}.{selector['instance_guid']}.json"

    @staticmethod
    def backup_prefix(selector: Dict[str, Any]) -> str:
        _require(selector, "tenant_id")
        prefix = f"{selector['tenant_id']}/backup/"
        if selector.get("service_id"):
            prefix += f"{selector['service_id']}."
            if selector.get("instance_guid"):
                prefix += f"{selector['instance_guid']}."
                if selector.get("backup_guid"):
                    prefix += f"{selector['backup_guid']}."
        return prefix

    @staticmethod
    def backup_path(selector: Dict[str, Any]) -> str:
        _require(selector, "tenant_id", "service_id", "instance_guid", "backup_guid", "started_at")
        return (
            f"{selector['tenant_id']}/backup/{selector['service_id']}.{selector['instance_guid']}."
            f"{selector['backup_guid']}.{selector['started_at']}.json"
        )

    @staticmethod
    def parse_backup_path(path: str) -> Optional[Dict[str, str]]:
        """Split a backup path into its selector keys; None if it is not one."""
        tenant_id, marker, name = path.partition("/backup/")
        if not marker or not name.endswith(".json"):
            return None
        parts = name[: -len(".json")].split(".", 3)
        if len(parts) != 4 or not all(parts):
            return None
        service_id, instance_guid, backup_guid, started_at = parts
        return {
            "tenant_id": tenant_id,
            "service_id": service_id,
            "instance_guid": instance_guid,
            "backup_guid": backup_guid,
            "started_at": started_at,
        }

    # ------------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------------

    @abstractmethod
    async def _read(self, path: str) -> Dict[str, Any]:
        """Return the document at path or raise NotFound."""

    @abstractmethod
    async def _write(self, path: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def _list(self, prefix: str) -> List[str]:
        ...

    # ------------------------------------------------------------------------
    # MetadataStore operations
    # ------------------------------------------------------------------------

    async def get_restore_file(self, selector: Dict[str, Any]) -> Dict[str, Any]:
        return await self._read(self.restore_path(selector))

    async def put_file(self, selector: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Write a metadata document.

        The path is derived from selector overlaid with data; restore
        documents (operation == "restore") go to the restore path.
        """
        document = dict(data)
        if document.get("started_at") is None:
            document["started_at"] = _iso_now()
        keys = {**selector, **document}
        if keys.get("operation") == "restore":
            path = self.restore_path(keys)
        else:
            path = self.backup_path(keys)
        await self._write(path, document)
        logger.debug(f"Wrote metadata file {path}")
        return document

    async def patch_restore_file(self, selector: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        """Merge data into the restore file; stamps finished_at when absent."""
        path = self.restore_path(selector)
        current = await self._read(path)
        merged = deep_merge(current, data)
        if not data.get("finished_at"):
            merged["finished_at"] = _iso_now()
        await self._write(path, merged)
        logger.debug(f"Patched metadata file {path}")
        return merged

    async def get_backup_file(self, selector: Dict[str, Any]) -> Dict[str, Any]:
        """
        Get the backup file for a backup_guid (latest if several match).

        Every path under the selector's prefix is parsed so backup_guid is
        matched exactly, whether or not service_id and instance_guid are given.
        """
        _require(selector, "backup_guid")
        matches = []
        for path in await self._list(self.backup_prefix(selector)):
            keys = self.parse_backup_path(path)
            if keys is None or keys["backup_guid"] != selector["backup_guid"]:
                continue
            if any(selector.get(field) and keys[field] != selector[field]
                   for field in ("service_id", "instance_guid")):
                continue
            matches.append((keys["started_at"], path))
        if not matches:
            raise NotFound(f"Backup file for {selector.get('backup_guid')} not found",
                           resource_id=selector.get("backup_guid"))
        return await self._read(max(matches)[1])

    async def list_backup_files(
        self,
        selector: Dict[str, Any],
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> List[Dict[str, Any]]:
        """Backup documents under the selector's prefix, sorted by started_at."""
        documents = []
        for path in await self._list(self.backup_prefix(selector)):
            document = await self._read(path)
            if predicate is None or predicate(document):
                documents.append(document)
        return sorted(documents, key=lambda d: d.get("started_at") or "")


# ============================================================================
# AZURE BLOB BACKEND
# ============================================================================

class BlobMetadataStore(_MetadataFileStore):
    """
    Metadata files in one Azure Blob Storage container.

    Usage:
        store = BlobMetadataStore.from_env()
        data = await store.get_restore_file({
            "tenant_id": space_guid,
            "service_id": service_id,
            "instance_guid": instance_guid,
        })
    """

    def __init__(self, account_name: str, container: str = "broker-metadata"):
        if not account_name:
            raise ValueError("BlobMetadataStore requires an explicit account_name")
        self.account_name = account_name
        self.container = container

        # Lazy initialization of Azure clients
        self._blob_service = None
        self._credential = None
        self._container_client = None
        self._client_lock = threading.Lock()

        logger.info(f"BlobMetadataStore initialized for {account_name}/{container}")

    @classmethod
    def from_env(cls) -> "BlobMetadataStore":
        """Create from BROKER_STORAGE_ACCOUNT / BROKER_METADATA_CONTAINER."""
        account = os.environ.get("BROKER_STORAGE_ACCOUNT")
        if not account:
            raise ValueError("BROKER_STORAGE_ACCOUNT environment variable not set")
        return cls(account, os.environ.get("BROKER_METADATA_CONTAINER", "broker-metadata"))

    # ========================================================================
    # AZURE CLIENT INITIALIZATION
    # ========================================================================

    def _get_credential(self):
        """Get Azure credential (lazy initialization)."""
        if self._credential is None:
            client_id = os.environ.get("AZURE_CLIENT_ID")
            if client_id:
                from azure.identity import ManagedIdentityCredential
                self._credential = ManagedIdentityCredential(client_id=client_id)
                logger.debug("ManagedIdentityCredential initialized with client_id")
            else:
                from azure.identity import DefaultAzureCredential
                self._credential = DefaultAzureCredential()
                logger.debug("DefaultAzureCredential initialized")
        return self._credential

    def _get_container_client(self):
        """Get the container client (lazy, thread-safe)."""
        if self._container_client is not None:
            return self._container_client

        with self._client_lock:
            if self._container_client is None:
                from azure.storage.blob import BlobServiceClient
                account_url = f"https://{self.account_name}.blob.core.windows.net"
                self._blob_service = BlobServiceClient(
                    account_url=account_url,
                    credential=self._get_credential(),
                )
                self._container_client = self._blob_service.get_container_client(self.container)
                logger.debug(f"Container client created for {account_url}/{self.container}")
        return self._container_client

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    # ========================================================================
    # BACKEND PRIMITIVES
    # ========================================================================

    def _download_json(self, path: str) -> Dict[str, Any]:
        from azure.core.exceptions import ResourceNotFoundError

        blob_client = self._get_container_client().get_blob_client(path)
        try:
            payload = blob_client.download_blob().readall()
        except ResourceNotFoundError as e:
            raise NotFound(f"Metadata file {path} not found", resource_id=path) from e
        return json.loads(payload)

    def _upload_json(self, path: str, data: Dict[str, Any]) -> None:
        from azure.storage.blob import ContentSettings

        blob_client = self._get_container_client().get_blob_client(path)
        blob_client.upload_blob(
            json.dumps(data).encode("utf-8"),
            overwrite=True,
            content_settings=ContentSettings(content_type="application/json"),
        )

    def _list_names(self, prefix: str) -> List[str]:
        return [blob.name for blob in self._get_container_client().list_blobs(name_starts_with=prefix)]

    async def _read(self, path: str) -> Dict[str, Any]:
        return await self._run(self._download_json, path)

    async def _write(self, path: str, data: Dict[str, Any]) -> None:
        await self._run(self._upload_json, path, data)

    async def _list(self, prefix: str) -> List[str]:
        return await self._run(self._list_names, prefix)


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================

class InMemoryMetadataStore(_MetadataFileStore):
    """Process-local metadata files keyed by path."""

    def __init__(self):
        self.files: Dict[str, Dict[str, Any]] = {}

    async def _read(self, path: str) -> Dict[str, Any]:
        if path not in self.files:
            raise NotFound(f"Metadata file {path} not found", resource_id=path)
        return json.loads(json.dumps(self.files[path]))

    async def _write(self, path: str, data: Dict[str, Any]) -> None:
        self.files[path] = json.loads(json.dumps(data))

    async def _list(self, prefix: str) -> List[str]:
        return sorted(p for p in self.files if p.startswith(prefix))


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "BlobMetadataStore",
    "InMemoryMetadataStore",
]

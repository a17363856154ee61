"""
Catalog store contract and in-memory reference implementation.

The engine only talks to the store through a TenantScope, which binds one
tenant at the query layer. The store checks tenant ownership again on
every write, so a bug above it still cannot touch another tenant's rows.
"""

import itertools
import threading
from datetime import datetime, timezone
from typing import Protocol

import structlog

from catalog_sync.models import CatalogEntity, EntityType, StoredEntity
from catalog_sync.search import DEFAULT_SEARCH_CONFIG, SearchConfig, build_search_document

logger = structlog.get_logger(__name__)


class TenantIsolationError(Exception):
    """A write targeted a tenant other than the entity's owner."""
    pass


class CatalogStore(Protocol):
    """What the sync engine needs from persistence."""

    def upsert(self, tenant_id: str, entity: CatalogEntity) -> StoredEntity: ...

    def delete(self, tenant_id: str, entity_type: EntityType, upstream_id: int) -> bool: ...

    def mark_search_dirty(self, tenant_id: str, entity_type: EntityType, upstream_id: int) -> None: ...

    def get(self, tenant_id: str, entity_type: EntityType, upstream_id: int) -> StoredEntity | None: ...

    def list(self, tenant_id: str, entity_type: EntityType) -> list[StoredEntity]: ...

    def set_parent(self, tenant_id: str, upstream_id: int, parent_id: int | None) -> None: ...

    def configure_search(self, tenant_id: str, config: SearchConfig) -> None: ...

    def drop_tenant(self, tenant_id: str) -> int: ...


class TenantScope:
    """Store access bound to a single tenant."""

    def __init__(self, store: CatalogStore, tenant_id: str):
        self.store = store
        self.tenant_id = tenant_id

    def upsert(self, entity: CatalogEntity) -> StoredEntity:
        if entity.tenant_id != self.tenant_id:
            raise TenantIsolationError(
                f"Scope for {self.tenant_id} refused entity of {entity.tenant_id}"
            )
        stored = self.store.upsert(self.tenant_id, entity)
        self.store.mark_search_dirty(self.tenant_id, entity.entity_type, entity.upstream_id)
        return stored

    def delete(self, entity_type: EntityType, upstream_id: int) -> bool:
        return self.store.delete(self.tenant_id, entity_type, upstream_id)

    def get(self, entity_type: EntityType, upstream_id: int) -> StoredEntity | None:
        return self.store.get(self.tenant_id, entity_type, upstream_id)

    def list(self, entity_type: EntityType) -> list[StoredEntity]:
        return self.store.list(self.tenant_id, entity_type)

    def set_parent(self, upstream_id: int, parent_id: int | None) -> None:
        self.store.set_parent(self.tenant_id, upstream_id, parent_id)

    def configure_search(self, config: SearchConfig) -> None:
        self.store.configure_search(self.tenant_id, config)


class _Partition:
    """One tenant's rows."""

    def __init__(self) -> None:
        self.rows: dict[tuple[EntityType, int], StoredEntity] = {}
        self.search_config: SearchConfig = DEFAULT_SEARCH_CONFIG
        self.dirty: set[tuple[EntityType, int]] = set()


class InMemoryCatalogStore:
    """
    Tenant-partitioned store keyed on (tenant, type, upstream id).

    Search documents are refreshed by the store itself: synchronously when
    an entity is marked dirty (`auto_refresh=True`), or on
    `refresh_search()` otherwise.
    """

    def __init__(self, auto_refresh: bool = True):
        self.auto_refresh = auto_refresh
        self._partitions: dict[str, _Partition] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def _partition(self, tenant_id: str) -> _Partition:
        partition = self._partitions.get(tenant_id)
        if partition is None:
            partition = _Partition()
            self._partitions[tenant_id] = partition
        return partition

    def scope(self, tenant_id: str) -> TenantScope:
        return TenantScope(self, tenant_id)

    def upsert(self, tenant_id: str, entity: CatalogEntity) -> StoredEntity:
        if entity.tenant_id != tenant_id:
            raise TenantIsolationError(
                f"Write for tenant {tenant_id} carried entity of tenant {entity.tenant_id}"
            )

        key = (entity.entity_type, entity.upstream_id)
        with self._lock:
            partition = self._partition(tenant_id)
            existing = partition.rows.get(key)
            stored = StoredEntity(
                **entity.model_dump(include=set(CatalogEntity.model_fields)),
                internal_id=existing.internal_id if existing else next(self._ids),
                # Parent links are resolved in a separate pass
                parent_id=existing.parent_id if existing else None,
                revision=existing.revision + 1 if existing else 1,
                search_document=existing.search_document if existing else {},
                stored_at=datetime.now(timezone.utc),
            )
            partition.rows[key] = stored
            return stored.model_copy(deep=True)

    def delete(self, tenant_id: str, entity_type: EntityType, upstream_id: int) -> bool:
        with self._lock:
            partition = self._partitions.get(tenant_id)
            if partition is None:
                return False
            removed = partition.rows.pop((entity_type, upstream_id), None)
            partition.dirty.discard((entity_type, upstream_id))
            if removed is None:
                return False

            if entity_type is EntityType.PRODUCT:
                # Products own their variants
                owned = [
                    k for k, row in partition.rows.items()
                    if k[0] is EntityType.VARIANT and row.product_upstream_id == upstream_id
                ]
                for k in owned:
                    del partition.rows[k]
                    partition.dirty.discard(k)
                if owned:
                    logger.debug(
                        "Removed variants of deleted product",
                        tenant_id=tenant_id,
                        product_id=upstream_id,
                        count=len(owned),
                    )
            elif entity_type is EntityType.CATEGORY:
                for k, row in list(partition.rows.items()):
                    if k[0] is EntityType.CATEGORY and row.parent_id == upstream_id:
                        partition.rows[k] = row.model_copy(update={"parent_id": None})
            return True

    def get(self, tenant_id: str, entity_type: EntityType, upstream_id: int) -> StoredEntity | None:
        with self._lock:
            partition = self._partitions.get(tenant_id)
            if partition is None:
                return None
            row = partition.rows.get((entity_type, upstream_id))
            return row.model_copy(deep=True) if row else None

    def list(self, tenant_id: str, entity_type: EntityType) -> list[StoredEntity]:
        with self._lock:
            partition = self._partitions.get(tenant_id)
            if partition is None:
                return []
            rows = [r for k, r in partition.rows.items() if k[0] is entity_type]
            return [r.model_copy(deep=True) for r in sorted(rows, key=lambda r: r.upstream_id)]

    def set_parent(self, tenant_id: str, upstream_id: int, parent_id: int | None) -> None:
        with self._lock:
            partition = self._partitions.get(tenant_id)
            if partition is None:
                return
            key = (EntityType.CATEGORY, upstream_id)
            row = partition.rows.get(key)
            if row is None:
                return
            if parent_id is not None and (EntityType.CATEGORY, parent_id) not in partition.rows:
                raise TenantIsolationError(
                    f"Parent category {parent_id} is not in tenant {tenant_id}"
                )
            partition.rows[key] = row.model_copy(update={"parent_id": parent_id})

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def configure_search(self, tenant_id: str, config: SearchConfig) -> None:
        with self._lock:
            partition = self._partition(tenant_id)
            if partition.search_config == config:
                return
            partition.search_config = config
            partition.dirty.update(partition.rows)
        if self.auto_refresh:
            self.refresh_search(tenant_id)

    def mark_search_dirty(self, tenant_id: str, entity_type: EntityType, upstream_id: int) -> None:
        with self._lock:
            self._partition(tenant_id).dirty.add((entity_type, upstream_id))
        if self.auto_refresh:
            self.refresh_search(tenant_id)

    def refresh_search(self, tenant_id: str) -> int:
        """Rebuild search documents of dirty rows. Returns the count refreshed."""
        with self._lock:
            partition = self._partitions.get(tenant_id)
            if partition is None:
                return 0
            refreshed = 0
            for key in list(partition.dirty):
                row = partition.rows.get(key)
                if row is not None:
                    document = build_search_document(row.search_source, partition.search_config)
                    partition.rows[key] = row.model_copy(update={"search_document": document})
                    refreshed += 1
            partition.dirty.clear()
            return refreshed

    def dirty_count(self, tenant_id: str) -> int:
        with self._lock:
            partition = self._partitions.get(tenant_id)
            return len(partition.dirty) if partition else 0

    # -------------------------------------------------------------------------
    # Tenants
    # -------------------------------------------------------------------------

    def drop_tenant(self, tenant_id: str) -> int:
        with self._lock:
            partition = self._partitions.pop(tenant_id, None)
        count = len(partition.rows) if partition else 0
        logger.info("Dropped tenant partition", tenant_id=tenant_id, rows=count)
        return count

    def count(self, tenant_id: str, entity_type: EntityType | None = None) -> int:
        with self._lock:
            partition = self._partitions.get(tenant_id)
            if partition is None:
                return 0
            if entity_type is None:
                return len(partition.rows)
            return sum(1 for k in partition.rows if k[0] is entity_type)

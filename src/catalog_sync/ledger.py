"""
Idempotency ledger.

Records the last applied upstream version per (tenant, entity type,
upstream id). Webhooks are delivered at least once and a reconcile can
race a webhook, so every write goes through `apply`, which checks,
writes and records under one per-key lock.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import structlog

from catalog_sync.models import EntityType

logger = structlog.get_logger(__name__)

LedgerKey = tuple[str, EntityType, int]


class LedgerConflict(Exception):
    """A concurrent writer already recorded this or a newer version."""

    def __init__(self, key: LedgerKey, version: datetime, recorded: datetime):
        super().__init__(
            f"{key[1].value}/{key[2]} for tenant {key[0]}: "
            f"version {version.isoformat()} <= recorded {recorded.isoformat()}"
        )
        self.key = key
        self.version = version
        self.recorded = recorded


@dataclass(frozen=True)
class IdempotencyRecord:
    tenant_id: str
    entity_type: EntityType
    upstream_id: int
    applied_version: datetime
    applied_at: datetime
    deleted: bool = False


class IdempotencyLedger:
    """
    In-memory ledger with striped per-key locking.

    Locks are taken from a fixed pool indexed by key hash, so memory does
    not grow with the number of entities while two keys only contend
    when they share a stripe.

    Usage:
        applied = ledger.apply(
            tenant_id, EntityType.PRODUCT, 42, item.version,
            lambda: scope.upsert(entity),
        )
    """

    def __init__(self, stripes: int = 64):
        if stripes <= 0:
            raise ValueError("stripes must be positive")
        self._stripes = [threading.RLock() for _ in range(stripes)]
        self._records: dict[LedgerKey, IdempotencyRecord] = {}
        self._records_lock = threading.Lock()

    def _lock_for(self, key: LedgerKey) -> threading.RLock:
        return self._stripes[hash(key) % len(self._stripes)]

    def get(self, tenant_id: str, entity_type: EntityType, upstream_id: int) -> IdempotencyRecord | None:
        with self._records_lock:
            return self._records.get((tenant_id, entity_type, upstream_id))

    def should_apply(
        self,
        tenant_id: str,
        entity_type: EntityType,
        upstream_id: int,
        version: datetime,
    ) -> bool:
        """True only for a version strictly newer than the recorded one."""
        record = self.get(tenant_id, entity_type, upstream_id)
        return record is None or version > record.applied_version

    def record_applied(
        self,
        tenant_id: str,
        entity_type: EntityType,
        upstream_id: int,
        version: datetime,
        deleted: bool = False,
    ) -> IdempotencyRecord:
        """
        Record an applied version.

        Raises:
            LedgerConflict: if an equal or newer version is already recorded
        """
        key = (tenant_id, entity_type, upstream_id)
        with self._records_lock:
            existing = self._records.get(key)
            if existing is not None and version <= existing.applied_version:
                raise LedgerConflict(key, version, existing.applied_version)
            record = IdempotencyRecord(
                tenant_id=tenant_id,
                entity_type=entity_type,
                upstream_id=upstream_id,
                applied_version=version,
                applied_at=datetime.now(timezone.utc),
                deleted=deleted,
            )
            self._records[key] = record
            return record

    def apply(
        self,
        tenant_id: str,
        entity_type: EntityType,
        upstream_id: int,
        version: datetime,
        write: Callable[[], object],
        deleted: bool = False,
    ) -> bool:
        """
        Run `write` if `version` is newer than the last applied one.

        Check, write and record are atomic per key. Returns True when the
        write ran, False for replays and stale versions.
        """
        key = (tenant_id, entity_type, upstream_id)
        with self._lock_for(key):
            if not self.should_apply(tenant_id, entity_type, upstream_id, version):
                logger.debug(
                    "Skipping already-applied version",
                    tenant_id=tenant_id,
                    entity_type=entity_type.value,
                    upstream_id=upstream_id,
                    version=version.isoformat(),
                )
                return False
            write()
            try:
                self.record_applied(tenant_id, entity_type, upstream_id, version, deleted=deleted)
            except LedgerConflict as e:
                # Only reachable if someone recorded outside apply(); the write
                # carried the same or older data, so treat it as a no-op.
                logger.info("Ledger conflict treated as no-op", error=str(e))
                return False
            return True

    def forget(self, tenant_id: str, entity_type: EntityType, upstream_id: int) -> bool:
        """Drop one record so the item can be applied again from scratch."""
        key = (tenant_id, entity_type, upstream_id)
        with self._lock_for(key):
            with self._records_lock:
                return self._records.pop(key, None) is not None

    def forget_tenant(self, tenant_id: str) -> int:
        """Drop all records of a tenant (uninstall)."""
        with self._records_lock:
            keys = [k for k in self._records if k[0] == tenant_id]
            for key in keys:
                del self._records[key]
        return len(keys)

    def __len__(self) -> int:
        with self._records_lock:
            return len(self._records)

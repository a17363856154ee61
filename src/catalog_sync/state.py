"""
Per-tenant sync checkpoints for resume after failure.

A full sync saves its pagination cursor per entity type after every
applied page. If the task dies halfway, the retry (or the next run after
a restart) continues from the last saved cursor. Re-applying a page is
harmless because the idempotency ledger turns repeats into no-ops.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from catalog_sync.models import SYNC_ORDER, EntityType

logger = structlog.get_logger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass
class EntityProgress:
    cursor: str | None = None
    seen_ids: set[int] = field(default_factory=set)
    complete: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "cursor": self.cursor,
            "seen_ids": sorted(self.seen_ids),
            "complete": self.complete,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityProgress":
        return cls(
            cursor=data.get("cursor"),
            seen_ids=set(data.get("seen_ids", [])),
            complete=data.get("complete", False),
        )


@dataclass
class SyncCheckpoint:
    """
    Checkpoint state for one tenant.

    Tracks progress of each entity type independently, allowing
    partial resumes. Holds no credentials.
    """
    tenant_id: str
    last_full_sync: datetime | None = None
    last_incremental: datetime | None = None

    progress: dict[EntityType, EntityProgress] = field(
        default_factory=lambda: {t: EntityProgress() for t in SYNC_ORDER}
    )

    # Sync metadata
    sync_started_at: datetime | None = None
    sync_type: str = ""  # "full" or "reconcile" while a full pass is open
    items_applied: int = 0
    errors: list[str] = field(default_factory=list)

    def entity(self, entity_type: EntityType) -> EntityProgress:
        return self.progress.setdefault(entity_type, EntityProgress())

    @property
    def in_progress(self) -> bool:
        """A full pass was started and not completed."""
        return self.sync_started_at is not None and not all(
            self.entity(t).complete for t in SYNC_ORDER
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "tenant_id": self.tenant_id,
            "last_full_sync": self.last_full_sync.isoformat() if self.last_full_sync else None,
            "last_incremental": self.last_incremental.isoformat() if self.last_incremental else None,
            "progress": {t.value: p.to_dict() for t, p in self.progress.items()},
            "sync_started_at": self.sync_started_at.isoformat() if self.sync_started_at else None,
            "sync_type": self.sync_type,
            "items_applied": self.items_applied,
            "errors": self.errors[-100:],  # Keep last 100 errors
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncCheckpoint":
        def parse_dt(val: str | None) -> datetime | None:
            return datetime.fromisoformat(val) if val else None

        progress = {t: EntityProgress() for t in SYNC_ORDER}
        for name, raw in (data.get("progress") or {}).items():
            progress[EntityType(name)] = EntityProgress.from_dict(raw)

        return cls(
            tenant_id=data["tenant_id"],
            last_full_sync=parse_dt(data.get("last_full_sync")),
            last_incremental=parse_dt(data.get("last_incremental")),
            progress=progress,
            sync_started_at=parse_dt(data.get("sync_started_at")),
            sync_type=data.get("sync_type", ""),
            items_applied=data.get("items_applied", 0),
            errors=data.get("errors", []),
        )

    def reset_for_new_sync(self, sync_type: str) -> None:
        """Reset progress tracking for a new full pass."""
        self.sync_started_at = datetime.now(timezone.utc)
        self.sync_type = sync_type
        self.items_applied = 0
        self.errors = []
        self.progress = {t: EntityProgress() for t in SYNC_ORDER}

    def record_error(self, message: str) -> None:
        self.errors.append(message)
        if len(self.errors) > 100:
            del self.errors[:-100]

    def mark_complete(self) -> None:
        """Close the current full pass."""
        self.last_full_sync = datetime.now(timezone.utc)
        self.sync_started_at = None
        self.sync_type = ""


class StateManager:
    """
    Persists one checkpoint file per tenant.

    Usage:
        state_mgr = StateManager("/var/lib/catalog-sync/state")
        checkpoint = state_mgr.load("shop-1")

        checkpoint.entity(EntityType.PRODUCT).cursor = "3"
        state_mgr.save(checkpoint)
    """

    def __init__(self, state_dir: str | Path | None = None):
        if state_dir is None:
            state_dir = Path.home() / ".catalog-sync" / "state"
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._log = logger.bind(state_dir=str(self.state_dir))

    def _path(self, tenant_id: str) -> Path:
        return self.state_dir / f"{_SAFE_NAME.sub('_', tenant_id)}.json"

    def load(self, tenant_id: str) -> SyncCheckpoint:
        """Load a tenant's checkpoint, or a fresh one if none exists."""
        path = self._path(tenant_id)
        if not path.exists():
            return SyncCheckpoint(tenant_id=tenant_id)

        try:
            with open(path, "r") as f:
                data = json.load(f)
            checkpoint = SyncCheckpoint.from_dict(data)
        except (OSError, ValueError, KeyError) as e:
            self._log.warning("Failed to load checkpoint, starting fresh", tenant_id=tenant_id, error=str(e))
            return SyncCheckpoint(tenant_id=tenant_id)

        if checkpoint.in_progress:
            self._log.info(
                "Loaded interrupted checkpoint",
                tenant_id=tenant_id,
                sync_type=checkpoint.sync_type,
                items_applied=checkpoint.items_applied,
            )
        return checkpoint

    def save(self, checkpoint: SyncCheckpoint) -> None:
        """
        Save a checkpoint.

        Uses atomic write (write to temp, then rename) to prevent corruption.
        """
        path = self._path(checkpoint.tenant_id)
        temp_file = path.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump(checkpoint.to_dict(), f, indent=2)
            temp_file.replace(path)
        except OSError as e:
            self._log.error("Failed to save checkpoint", tenant_id=checkpoint.tenant_id, error=str(e))
            raise

        self._log.debug(
            "Saved checkpoint",
            tenant_id=checkpoint.tenant_id,
            items_applied=checkpoint.items_applied,
        )

    def clear(self, tenant_id: str) -> None:
        """Delete a tenant's checkpoint (uninstall or reset)."""
        path = self._path(tenant_id)
        if path.exists():
            path.unlink()
            self._log.info("Cleared checkpoint", tenant_id=tenant_id)

    def tenants(self) -> list[str]:
        """Tenant ids with a saved checkpoint."""
        tenants = []
        for path in sorted(self.state_dir.glob("*.json")):
            try:
                with open(path) as f:
                    tenants.append(json.load(f)["tenant_id"])
            except (OSError, ValueError, KeyError):
                continue
        return tenants

"""
Sync tasks and the coalescing task queue.

The scheduler and the webhook ingestor both produce tasks; orchestrator
workers consume them. At most one task per tenant runs at a time, and the
queue folds redundant pending work together:

- a pending Full/Reconcile absorbs new tasks of its tenant that it covers
- a new Full/Reconcile replaces pending tasks of its tenant that it covers
- identical pending Incremental tasks collapse into one

An unfiltered Full/Reconcile covers every entity type; one filtered to an
entity type covers only tasks of that type.
"""

import itertools
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

import structlog

from catalog_sync.models import EntityType

logger = structlog.get_logger(__name__)


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    RECONCILE = "reconcile"

    @property
    def is_full(self) -> bool:
        return self is not SyncMode.INCREMENTAL


@dataclass(frozen=True)
class SyncTask:
    """One unit of sync work. Consumed exactly once."""

    tenant_id: str
    mode: SyncMode
    entity_type: EntityType | None = None
    entity_id: int | None = None
    action: str | None = None
    version: datetime | None = None  # from the webhook payload, when it carries one
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempt: int = 1
    not_before: float = 0.0  # monotonic time

    @property
    def dedup_key(self) -> tuple:
        return (self.tenant_id, self.mode, self.entity_type, self.entity_id, self.action)

    def retry(self, delay: float, now: float | None = None) -> "SyncTask":
        """The same task, scheduled `delay` seconds from now as the next attempt."""
        current = time.monotonic() if now is None else now
        return replace(self, attempt=self.attempt + 1, not_before=current + delay)

    def covers(self, other: "SyncTask") -> bool:
        """
        True if running this task redoes all the work of `other`.

        An unfiltered Full/Reconcile covers every task of its tenant; one
        filtered to an entity type covers only tasks of that type.
        """
        if not self.mode.is_full or other.tenant_id != self.tenant_id:
            return False
        if self.entity_type is None:
            return True
        return other.entity_type is self.entity_type

    def describe(self) -> str:
        parts = [self.mode.value]
        if self.entity_type:
            parts.append(self.entity_type.value)
        if self.entity_id is not None:
            parts.append(str(self.entity_id))
        return "/".join(parts)


class TaskQueue:
    """
    Thread-safe queue of pending sync tasks with per-tenant coalescing.

    `take` hands out the oldest ready task whose tenant lease can be
    acquired. Tasks of a tenant that is already running stay queued.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._pending: list[tuple[int, SyncTask]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._closed = False

    def put(self, task: SyncTask) -> bool:
        """
        Queue a task. Returns False when it was absorbed by pending work.
        """
        with self._cond:
            tenant_tasks = [t for _, t in self._pending if t.tenant_id == task.tenant_id]

            if any(t.covers(task) for t in tenant_tasks):
                logger.debug("Task absorbed by pending full sync", tenant_id=task.tenant_id, task=task.describe())
                return False

            if task.mode is SyncMode.INCREMENTAL:
                if any(t.dedup_key == task.dedup_key for t in tenant_tasks):
                    logger.debug("Duplicate incremental collapsed", tenant_id=task.tenant_id, task=task.describe())
                    return False
            else:
                before = len(self._pending)
                self._pending = [(seq, t) for seq, t in self._pending if not task.covers(t)]
                absorbed = before - len(self._pending)
                if absorbed:
                    logger.debug(
                        "Full sync replaced pending tasks",
                        tenant_id=task.tenant_id,
                        task=task.describe(),
                        absorbed=absorbed,
                    )

            self._pending.append((next(self._seq), task))
            self._cond.notify_all()
            return True

    def take(
        self,
        try_lease: Callable[[str], bool],
        timeout: float | None = None,
    ) -> SyncTask | None:
        """
        Remove and return the first ready task whose lease was acquired.

        Tenants are served in order of their oldest pending task, and a
        tenant's Full/Reconcile tasks are preferred over its incrementals.
        Returns None on timeout or when the queue is closed.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while not self._closed:
                now = self._clock()
                next_ready = None
                for seq, task in self._in_take_order():
                    if task.not_before > now:
                        next_ready = task.not_before if next_ready is None else min(next_ready, task.not_before)
                        continue
                    if try_lease(task.tenant_id):
                        self._pending.remove((seq, task))
                        return task

                wait = None if deadline is None else deadline - now
                if wait is not None and wait <= 0:
                    return None
                if next_ready is not None:
                    until_ready = max(0.0, next_ready - now)
                    wait = until_ready if wait is None else min(wait, until_ready)
                # Leases are released outside the queue, so poll while tasks are blocked
                if self._pending:
                    wait = 0.5 if wait is None else min(wait, 0.5)
                self._cond.wait(wait)
            return None

    def _in_take_order(self) -> list[tuple[int, SyncTask]]:
        # Tenants in order of their oldest pending task; within a tenant,
        # full syncs first
        first_seq: dict[str, int] = {}
        for seq, task in self._pending:
            first_seq[task.tenant_id] = min(seq, first_seq.get(task.tenant_id, seq))
        return sorted(
            self._pending,
            key=lambda p: (first_seq[p[1].tenant_id], not p[1].mode.is_full, p[0]),
        )

    def drop_tenant(self, tenant_id: str) -> int:
        with self._cond:
            before = len(self._pending)
            self._pending = [(s, t) for s, t in self._pending if t.tenant_id != tenant_id]
            return before - len(self._pending)

    def pending(self, tenant_id: str | None = None) -> list[SyncTask]:
        with self._cond:
            return [t for _, t in sorted(self._pending) if tenant_id is None or t.tenant_id == tenant_id]

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._pending)

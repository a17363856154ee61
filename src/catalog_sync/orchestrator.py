"""
Sync Orchestrator

Drives Full, Incremental and Reconcile syncs per tenant:
- Per-tenant mutual exclusion through atomic leases
- Idempotent application of every item through the ledger
- Two-pass category application with cycle breaking
- Checkpointed pagination so a failed full sync resumes where it stopped
- Exponential backoff retry of the whole task for transient failures
- A bounded worker pool shared by all tenants
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from catalog_sync.categories import resolve_parents
from catalog_sync.client import (
    CatalogClient,
    SyncCancelled,
    UpstreamNotFound,
    UpstreamRejected,
    UpstreamUnavailable,
)
from catalog_sync.ledger import IdempotencyLedger
from catalog_sync.models import SYNC_ORDER, EntityType, SyncStatus, UpstreamItem
from catalog_sync.rate_limiter import RateLimitExceeded
from catalog_sync.search import SearchConfigProvider, default_search_config
from catalog_sync.state import EntityProgress, StateManager, SyncCheckpoint
from catalog_sync.store import InMemoryCatalogStore, TenantScope
from catalog_sync.tasks import SyncMode, SyncTask, TaskQueue
from catalog_sync.tenants import Tenant, TenantRegistry, UnknownTenant

logger = structlog.get_logger(__name__)


class TenantLockContention(Exception):
    """Another task already holds the tenant's lease."""

    def __init__(self, tenant_id: str, holder: str | None):
        super().__init__(f"Tenant {tenant_id} is being synced by {holder}")
        self.tenant_id = tenant_id
        self.holder = holder


class SyncPhase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    APPLYING = "applying"
    RECONCILING = "reconciling"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def running(self) -> bool:
        return self in (SyncPhase.FETCHING, SyncPhase.APPLYING, SyncPhase.RECONCILING)


class SyncOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    COALESCED = "coalesced"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass
class SyncReport:
    """Result of running one task."""

    tenant_id: str
    mode: SyncMode
    attempt: int = 1
    outcome: SyncOutcome = SyncOutcome.COMPLETED
    applied: int = 0
    unchanged: int = 0
    deleted: int = 0
    pruned: int = 0
    rejected: list[str] = field(default_factory=list)
    dropped_edges: list[str] = field(default_factory=list)
    error: str | None = None
    retry_in: float | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def skipped(self) -> int:
        return len(self.rejected)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "mode": self.mode.value,
            "attempt": self.attempt,
            "outcome": self.outcome.value,
            "applied": self.applied,
            "unchanged": self.unchanged,
            "deleted": self.deleted,
            "pruned": self.pruned,
            "skipped": self.skipped,
            "rejected": self.rejected[:20],
            "dropped_edges": self.dropped_edges[:20],
            "error": self.error,
            "retry_in": self.retry_in,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class LeaseManager:
    """Per-tenant sync leases. Acquisition is a single check-and-set."""

    def __init__(self) -> None:
        self._holders: dict[str, str] = {}
        self._lock = threading.Lock()

    def try_acquire(self, tenant_id: str, owner: str) -> bool:
        with self._lock:
            if tenant_id in self._holders:
                return False
            self._holders[tenant_id] = owner
            return True

    def release(self, tenant_id: str, owner: str) -> None:
        with self._lock:
            if self._holders.get(tenant_id) == owner:
                del self._holders[tenant_id]

    def holder(self, tenant_id: str) -> str | None:
        with self._lock:
            return self._holders.get(tenant_id)

    def held(self) -> dict[str, str]:
        with self._lock:
            return dict(self._holders)


class SyncOrchestrator:
    """
    Runs sync tasks against the upstream and writes into the catalog store.

    Example:
        orchestrator = SyncOrchestrator(client, store, ledger, registry, state)
        orchestrator.start()
        orchestrator.submit(SyncTask("shop-1", SyncMode.FULL))
        ...
        orchestrator.stop()

    `run_task` executes a task synchronously in the calling thread, which
    is what the CLI and tests use.
    """

    def __init__(
        self,
        client: CatalogClient,
        store: InMemoryCatalogStore,
        ledger: IdempotencyLedger,
        registry: TenantRegistry,
        state: StateManager,
        queue: TaskQueue | None = None,
        search_config: SearchConfigProvider = default_search_config,
        max_workers: int = 4,
        max_attempts: int = 5,
        backoff_base: float = 30.0,
        backoff_max: float = 1800.0,
    ):
        """
        Initialize orchestrator.

        Args:
            client: Upstream client (rate limited per tenant)
            store: Catalog store, accessed only through tenant scopes
            ledger: Idempotency ledger gating every write
            registry: Tenants and their sync status
            state: Checkpoint persistence for resumable full syncs
            queue: Pending task queue (created if omitted)
            search_config: Per-tenant search field configuration, read
                once per full sync
            max_workers: Worker threads shared by all tenants
            max_attempts: Attempts per task before the tenant is marked Failed
            backoff_base: First retry delay in seconds, doubled per attempt
            backoff_max: Ceiling for the retry delay
        """
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")

        self.client = client
        self.store = store
        self.ledger = ledger
        self.registry = registry
        self.state = state
        self.queue = queue or TaskQueue()
        self.search_config = search_config
        self.max_workers = max_workers
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.leases = LeaseManager()
        self._phases: dict[str, SyncPhase] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._pending_purges: set[str] = set()
        self._lock = threading.Lock()

        self._workers: list[threading.Thread] = []
        self._running = threading.Event()
        self._reports: list[SyncReport] = []

    # -------------------------------------------------------------------------
    # Task intake
    # -------------------------------------------------------------------------

    def submit(self, task: SyncTask) -> bool:
        """Queue a task for the worker pool. False if it was coalesced."""
        return self.queue.put(task)

    def run_task(self, task: SyncTask) -> SyncReport:
        """
        Run one task in the calling thread.

        If the tenant is already syncing, the task is handed back to the
        queue (where it coalesces with other pending work) instead.
        """
        owner = f"{threading.current_thread().name}:{id(task)}"
        if not self.leases.try_acquire(task.tenant_id, owner):
            contention = TenantLockContention(task.tenant_id, self.leases.holder(task.tenant_id))
            logger.info("Tenant busy, requeueing task", tenant_id=task.tenant_id, error=str(contention))
            self.queue.put(task)
            report = SyncReport(task.tenant_id, task.mode, attempt=task.attempt, outcome=SyncOutcome.COALESCED)
            report.finished_at = datetime.now(timezone.utc)
            return report
        return self._run_leased(task, owner)

    # -------------------------------------------------------------------------
    # Phases and cancellation
    # -------------------------------------------------------------------------

    def phase(self, tenant_id: str) -> SyncPhase:
        with self._lock:
            return self._phases.get(tenant_id, SyncPhase.IDLE)

    def _set_phase(self, tenant_id: str, phase: SyncPhase) -> None:
        with self._lock:
            self._phases[tenant_id] = phase

    def running_tenants(self) -> list[str]:
        with self._lock:
            return [t for t, p in self._phases.items() if p.running]

    def cancel_tenant(self, tenant_id: str) -> bool:
        """Stop a running task of the tenant before its next upstream call."""
        with self._lock:
            event = self._cancel_events.get(tenant_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested", tenant_id=tenant_id)
        return True

    def uninstall_tenant(self, tenant_id: str) -> bool:
        """
        Cancel work and drop every trace of a tenant.

        When a task of the tenant is still running, its data is dropped as
        soon as that task releases the lease, so nothing it applies after
        the cancellation survives. Returns True if the data was dropped
        immediately.
        """
        owner = f"uninstall:{threading.get_ident()}"
        self.cancel_tenant(tenant_id)
        dropped = self.queue.drop_tenant(tenant_id)
        self.registry.remove(tenant_id)

        with self._lock:
            acquired = self.leases.try_acquire(tenant_id, owner)
            if not acquired:
                self._pending_purges.add(tenant_id)

        if not acquired:
            logger.info("Tenant uninstalled, purge deferred until running task stops", tenant_id=tenant_id, dropped_tasks=dropped)
            return False

        try:
            self._purge_tenant(tenant_id)
        finally:
            self.leases.release(tenant_id, owner)
        logger.info("Tenant uninstalled", tenant_id=tenant_id, dropped_tasks=dropped)
        return True

    def _purge_tenant(self, tenant_id: str) -> None:
        # Caller holds the tenant lease
        self.store.drop_tenant(tenant_id)
        self.ledger.forget_tenant(tenant_id)
        self.state.clear(tenant_id)
        self.client.forget_tenant(tenant_id)
        with self._lock:
            self._phases.pop(tenant_id, None)

    @staticmethod
    def _check_cancelled(tenant_id: str, cancel: threading.Event) -> None:
        if cancel.is_set():
            raise SyncCancelled(tenant_id)

    # -------------------------------------------------------------------------
    # Task execution
    # -------------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))

    def _run_leased(self, task: SyncTask, owner: str) -> SyncReport:
        log = logger.bind(tenant_id=task.tenant_id, task=task.describe(), attempt=task.attempt)
        report = SyncReport(task.tenant_id, task.mode, attempt=task.attempt)
        cancel = threading.Event()
        with self._lock:
            self._cancel_events[task.tenant_id] = cancel

        try:
            try:
                tenant = self.registry.get(task.tenant_id)
            except UnknownTenant:
                log.warning("Task for unknown tenant discarded")
                report.outcome = SyncOutcome.CANCELLED
                return report

            if not tenant.sync_enabled:
                log.info("Sync not enabled for tenant, skipping task")
                report.outcome = SyncOutcome.SKIPPED
                return report

            log.info("Starting sync task")
            if task.mode.is_full:
                self.registry.set_status(tenant.id, SyncStatus.SYNCING)
                self._run_full(tenant, task, report, cancel)
                self.registry.set_status(tenant.id, SyncStatus.COMPLETED)
            else:
                self._run_incremental(tenant, task, report, cancel)

            self._set_phase(tenant.id, SyncPhase.COMPLETED)
            report.outcome = SyncOutcome.COMPLETED

        except SyncCancelled:
            log.info("Sync task cancelled")
            report.outcome = SyncOutcome.CANCELLED
            self._set_phase(task.tenant_id, SyncPhase.IDLE)

        except (UpstreamUnavailable, RateLimitExceeded) as e:
            self._handle_transient(task, report, e, log)

        except UpstreamRejected as e:
            # Rejected at task level (e.g. credentials revoked): retrying won't help
            log.error("Upstream rejected sync task", error=str(e))
            self._fail(task, report, str(e))

        except Exception as e:
            log.exception("Sync task crashed")
            self._fail(task, report, f"{e.__class__.__name__}: {e}")

        finally:
            report.finished_at = datetime.now(timezone.utc)
            with self._lock:
                if self._cancel_events.get(task.tenant_id) is cancel:
                    del self._cancel_events[task.tenant_id]
                self._reports.append(report)
                del self._reports[:-200]
                purge = task.tenant_id in self._pending_purges
                self._pending_purges.discard(task.tenant_id)
                if not purge:
                    self.leases.release(task.tenant_id, owner)
            if purge:
                # Uninstalled while running: drop what this task wrote
                try:
                    self._purge_tenant(task.tenant_id)
                    log.info("Deferred tenant purge finished")
                finally:
                    self.leases.release(task.tenant_id, owner)
            self.queue.wake()

        log.info(
            "Sync task finished",
            outcome=report.outcome.value,
            applied=report.applied,
            unchanged=report.unchanged,
            deleted=report.deleted,
            skipped=report.skipped,
        )
        return report

    def _handle_transient(
        self,
        task: SyncTask,
        report: SyncReport,
        error: Exception,
        log: Any,
    ) -> None:
        if task.attempt >= self.max_attempts:
            log.error("Retries exhausted", error=str(error))
            self._fail(task, report, f"Retries exhausted: {error}")
            return

        delay = self._backoff(task.attempt)
        if isinstance(error, RateLimitExceeded):
            delay = max(delay, error.retry_after)

        # Progress already committed stays; a full sync resumes from its checkpoint
        self.queue.put(task.retry(delay))
        report.outcome = SyncOutcome.RETRY_SCHEDULED
        report.error = str(error)
        report.retry_in = delay
        self._set_phase(task.tenant_id, SyncPhase.IDLE)
        log.warning("Transient failure, task rescheduled", error=str(error), retry_in=round(delay, 1))

    def _fail(self, task: SyncTask, report: SyncReport, message: str) -> None:
        report.outcome = SyncOutcome.FAILED
        report.error = message
        self._set_phase(task.tenant_id, SyncPhase.FAILED)
        self.registry.set_status(task.tenant_id, SyncStatus.FAILED, error=message)

    # -------------------------------------------------------------------------
    # Full / Reconcile
    # -------------------------------------------------------------------------

    def _run_full(
        self,
        tenant: Tenant,
        task: SyncTask,
        report: SyncReport,
        cancel: threading.Event,
    ) -> None:
        scope = TenantScope(self.store, tenant.id)
        # Search fields are read once per run
        scope.configure_search(self.search_config(tenant.id))

        if task.entity_type is not None:
            # Single-type runs leave the tenant checkpoint alone
            self._sync_entity_type(tenant, scope, task.entity_type, EntityProgress(), report, cancel)
            if task.entity_type is EntityType.CATEGORY:
                self._resolve_categories(scope, report)
            return

        checkpoint = self.state.load(tenant.id)
        if checkpoint.in_progress:
            logger.info(
                "Resuming interrupted full sync",
                tenant_id=tenant.id,
                interrupted_type=checkpoint.sync_type,
                items_applied=checkpoint.items_applied,
            )
        else:
            checkpoint.reset_for_new_sync(task.mode.value)
            self.state.save(checkpoint)

        for entity_type in SYNC_ORDER:
            progress = checkpoint.entity(entity_type)
            if progress.complete:
                continue
            self._sync_entity_type(tenant, scope, entity_type, progress, report, cancel, checkpoint)

        self._set_phase(tenant.id, SyncPhase.RECONCILING)
        self._resolve_categories(scope, report)

        checkpoint.mark_complete()
        self.state.save(checkpoint)

    def _sync_entity_type(
        self,
        tenant: Tenant,
        scope: TenantScope,
        entity_type: EntityType,
        progress: EntityProgress,
        report: SyncReport,
        cancel: threading.Event,
        checkpoint: SyncCheckpoint | None = None,
    ) -> None:
        """
        Paginate one entity type from its saved cursor, then prune rows
        the upstream no longer lists. Saves the checkpoint after each page.
        """
        log = logger.bind(tenant_id=tenant.id, entity_type=entity_type.value)
        cursor = progress.cursor

        while True:
            self._check_cancelled(tenant.id, cancel)
            self._set_phase(tenant.id, SyncPhase.FETCHING)
            page = self.client.fetch_page(tenant, entity_type, cursor, cancel_event=cancel)
            self._check_cancelled(tenant.id, cancel)

            self._set_phase(tenant.id, SyncPhase.APPLYING)
            applied_before = report.applied
            for item in page.items:
                progress.seen_ids.add(item.id)
                self._apply_item(scope, entity_type, item, report)

            for rejected in page.rejected:
                # Keep whatever we already hold for a rejected item
                if rejected.upstream_id is not None:
                    progress.seen_ids.add(rejected.upstream_id)
                message = f"{entity_type.value}/{rejected.upstream_id}: {rejected.reason}"
                report.rejected.append(message)
                log.warning("Skipping rejected item", upstream_id=rejected.upstream_id, reason=rejected.reason)
                if checkpoint is not None:
                    checkpoint.record_error(message)

            progress.cursor = page.next_cursor
            if checkpoint is not None:
                checkpoint.items_applied += report.applied - applied_before
                if not page.done:
                    self.state.save(checkpoint)

            if page.done:
                break
            cursor = page.next_cursor

        self._set_phase(tenant.id, SyncPhase.RECONCILING)
        report.pruned += self._prune(scope, entity_type, progress.seen_ids)
        progress.complete = True
        if checkpoint is not None:
            self.state.save(checkpoint)
        log.info("Entity type synced", seen=len(progress.seen_ids))

    def _prune(self, scope: TenantScope, entity_type: EntityType, seen_ids: set[int]) -> int:
        """Delete stored rows that a complete listing no longer contains."""
        pruned = 0
        for row in scope.list(entity_type):
            if row.upstream_id in seen_ids:
                continue
            if scope.delete(entity_type, row.upstream_id):
                # Forgetting the version lets a later listing restore the row
                self.ledger.forget(scope.tenant_id, entity_type, row.upstream_id)
                pruned += 1
        if pruned:
            logger.info(
                "Pruned entities missing upstream",
                tenant_id=scope.tenant_id,
                entity_type=entity_type.value,
                count=pruned,
            )
        return pruned

    def _apply_item(
        self,
        scope: TenantScope,
        entity_type: EntityType,
        item: UpstreamItem,
        report: SyncReport,
    ) -> bool:
        entity = item.to_entity(scope.tenant_id, entity_type)
        applied = self.ledger.apply(
            scope.tenant_id,
            entity_type,
            item.id,
            item.version,
            lambda: scope.upsert(entity),
        )

        if applied:
            report.applied += 1
        else:
            report.unchanged += 1
        return applied

    def _apply_delete(
        self,
        scope: TenantScope,
        entity_type: EntityType,
        upstream_id: int,
        version: datetime,
        report: SyncReport,
    ) -> None:
        deleted: list[bool] = []
        applied = self.ledger.apply(
            scope.tenant_id,
            entity_type,
            upstream_id,
            version,
            lambda: deleted.append(scope.delete(entity_type, upstream_id)),
            deleted=True,
        )

        if applied and any(deleted):
            report.deleted += 1
        else:
            report.unchanged += 1

    def _resolve_categories(self, scope: TenantScope, report: SyncReport) -> None:
        """Second category pass: link parents, dropping cyclic or dangling edges."""
        rows = scope.list(EntityType.CATEGORY)
        if not rows:
            return
        resolution = resolve_parents({row.upstream_id: row.parent_upstream_id for row in rows})

        for row in rows:
            parent = resolution.parents.get(row.upstream_id)
            if parent != row.parent_id:
                scope.set_parent(row.upstream_id, parent)

        for edge in resolution.dropped:
            report.dropped_edges.append(f"{edge.category_id}->{edge.parent_id} ({edge.reason})")
        if resolution.dropped:
            logger.warning(
                "Dropped category parent links",
                tenant_id=scope.tenant_id,
                count=len(resolution.dropped),
            )

    # -------------------------------------------------------------------------
    # Incremental
    # -------------------------------------------------------------------------

    def _run_incremental(
        self,
        tenant: Tenant,
        task: SyncTask,
        report: SyncReport,
        cancel: threading.Event,
    ) -> None:
        scope = TenantScope(self.store, tenant.id)
        entity_type = task.entity_type
        if entity_type is None:
            raise ValueError("Incremental task needs an entity type")

        if task.entity_id is None:
            # No item detail in the event: refresh the whole item group
            self._sync_entity_type(tenant, scope, entity_type, EntityProgress(), report, cancel)
        elif task.action == "deleted":
            self._set_phase(tenant.id, SyncPhase.APPLYING)
            version = task.version or task.enqueued_at
            self._apply_delete(scope, entity_type, task.entity_id, version, report)
        else:
            self._check_cancelled(tenant.id, cancel)
            self._set_phase(tenant.id, SyncPhase.FETCHING)
            try:
                item = self.client.fetch_one(tenant, entity_type, task.entity_id, cancel_event=cancel)
            except UpstreamNotFound:
                self._set_phase(tenant.id, SyncPhase.APPLYING)
                version = task.version or datetime.now(timezone.utc)
                self._apply_delete(scope, entity_type, task.entity_id, version, report)
            except UpstreamRejected as e:
                report.rejected.append(f"{entity_type.value}/{task.entity_id}: {e}")
                logger.warning(
                    "Skipping rejected item",
                    tenant_id=tenant.id,
                    entity_type=entity_type.value,
                    upstream_id=task.entity_id,
                    error=str(e),
                )
            else:
                self._check_cancelled(tenant.id, cancel)
                self._set_phase(tenant.id, SyncPhase.APPLYING)
                self._apply_item(scope, entity_type, item, report)

        if entity_type is EntityType.CATEGORY:
            self._set_phase(tenant.id, SyncPhase.RECONCILING)
            self._resolve_categories(scope, report)

        checkpoint = self.state.load(tenant.id)
        checkpoint.last_incremental = datetime.now(timezone.utc)
        self.state.save(checkpoint)

    # -------------------------------------------------------------------------
    # Worker pool
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start worker threads pulling from the queue."""
        if self._running.is_set():
            return
        self._running.set()
        for i in range(self.max_workers):
            worker = threading.Thread(
                target=self._worker_loop,
                name=f"sync-worker-{i}",
                daemon=True,
            )
            worker.start()
            self._workers.append(worker)
        logger.info("Sync workers started", workers=self.max_workers)

    def stop(self, timeout: float = 30.0) -> None:
        """Stop workers after their current task."""
        self._running.clear()
        self.queue.close()
        for worker in self._workers:
            worker.join(timeout)
        self._workers = []
        logger.info("Sync workers stopped")

    def _worker_loop(self) -> None:
        owner = threading.current_thread().name
        while self._running.is_set():
            task = self.queue.take(
                lambda tenant_id: self.leases.try_acquire(tenant_id, owner),
                timeout=1.0,
            )
            if task is None:
                continue
            self._run_leased(task, owner)

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def recent_reports(self, tenant_id: str | None = None) -> list[SyncReport]:
        with self._lock:
            return [r for r in self._reports if tenant_id is None or r.tenant_id == tenant_id]

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            phases = {t: p.value for t, p in self._phases.items()}
        return {
            "workers": len(self._workers),
            "pending_tasks": len(self.queue),
            "leases": self.leases.held(),
            "phases": phases,
            "ledger_records": len(self.ledger),
            "client": self.client.get_stats(),
        }

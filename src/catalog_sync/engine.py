"""
Catalog Sync Engine

Wires the components together from configuration:
rate limiter -> client -> orchestrator <- queue <- webhooks / scheduler
"""

from typing import Any

import httpx
import structlog

from catalog_sync.client import CatalogClient
from catalog_sync.config import SyncConfig
from catalog_sync.ledger import IdempotencyLedger
from catalog_sync.models import EntityType
from catalog_sync.orchestrator import SyncOrchestrator, SyncReport
from catalog_sync.rate_limiter import MultiWindowRateLimiter
from catalog_sync.scheduler import SyncScheduler
from catalog_sync.search import SearchConfigProvider, default_search_config
from catalog_sync.security import verify_install_signature
from catalog_sync.state import StateManager
from catalog_sync.store import InMemoryCatalogStore
from catalog_sync.tasks import SyncMode, SyncTask, TaskQueue
from catalog_sync.tenants import (
    CredentialProvider,
    StaticCredentialProvider,
    Tenant,
    TenantRegistry,
)
from catalog_sync.webhooks import WebhookIngestor

logger = structlog.get_logger(__name__)

WEBHOOK_GROUPS = (EntityType.CATEGORY, EntityType.PRODUCT, EntityType.VARIANT, EntityType.PAGE)


class SyncEngine:
    """
    Long-running sync service.

    Example:
        engine = SyncEngine(load_config())
        engine.start()
        ...
        engine.stop()

    Everything is injectable so tests can swap the store, the credential
    provider or the HTTP transport.
    """

    def __init__(
        self,
        config: SyncConfig,
        store: InMemoryCatalogStore | None = None,
        credentials: CredentialProvider | None = None,
        search_config: SearchConfigProvider = default_search_config,
        transport: httpx.BaseTransport | None = None,
    ):
        self.config = config
        self.registry = TenantRegistry()
        self.queue = TaskQueue()
        self.store = store or InMemoryCatalogStore()
        self.ledger = IdempotencyLedger()
        self.state = StateManager(config.state_dir)
        self.rate_limiter = MultiWindowRateLimiter()

        if credentials is None:
            static = StaticCredentialProvider()
            for tenant_config in config.tenants:
                static.set(tenant_config.id, tenant_config.credentials())
            credentials = static
        self.credentials = credentials

        self.client = CatalogClient(
            self.rate_limiter,
            credentials,
            page_size=config.page_size,
            timeout=config.request_timeout,
            max_wait=config.rate_limit_max_wait,
            transport=transport,
        )
        self.orchestrator = SyncOrchestrator(
            self.client,
            self.store,
            self.ledger,
            self.registry,
            self.state,
            queue=self.queue,
            search_config=search_config,
            max_workers=config.max_workers,
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base_seconds,
            backoff_max=config.backoff_max_seconds,
        )
        self.ingestor = WebhookIngestor(self.registry, self.queue, config.app_secret)
        self.scheduler = SyncScheduler(
            self.registry,
            self.queue,
            self.rate_limiter,
            reconcile_interval_hours=config.reconcile_interval_hours,
        )

        for tenant_config in config.tenants:
            self.registry.register(tenant_config.to_tenant())
            if tenant_config.sync_enabled:
                # Configured by the operator, so the install gate is satisfied
                self.registry.enable(tenant_config.id, install_verified=True)

    # -------------------------------------------------------------------------
    # Tenants
    # -------------------------------------------------------------------------

    def install_tenant(self, tenant: Tenant, install_params: dict[str, Any]) -> bool:
        """
        Register a shop from an install request and queue its first sync.

        Sync is only enabled if the install signature checks out.
        """
        self.registry.register(tenant)
        verified = verify_install_signature(install_params, self.config.app_secret)
        if not self.registry.enable(tenant.id, install_verified=verified):
            return False
        self.queue.put(SyncTask(tenant.id, SyncMode.FULL))
        return True

    def uninstall_tenant(self, tenant_id: str) -> None:
        self.orchestrator.uninstall_tenant(tenant_id)
        if isinstance(self.credentials, StaticCredentialProvider):
            self.credentials.remove(tenant_id)

    def register_webhooks(self, tenant_id: str) -> dict[str, int]:
        """Subscribe the tenant's item groups to this service's callback URL."""
        callback_url = self.config.callback_url(tenant_id)
        if not callback_url:
            raise ValueError("webhook_url is not configured")
        tenant = self.registry.get(tenant_id)
        return {
            group.value: self.client.register_webhook(tenant, group, callback_url)
            for group in WEBHOOK_GROUPS
        }

    def sync_now(
        self,
        tenant_id: str,
        mode: SyncMode = SyncMode.FULL,
        entity_type: EntityType | None = None,
    ) -> SyncReport:
        """Run a sync in the calling thread."""
        return self.orchestrator.run_task(SyncTask(tenant_id, mode, entity_type=entity_type))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, initial_reconcile: bool = True) -> None:
        self.orchestrator.start()
        self.scheduler.start()
        if initial_reconcile:
            self.scheduler.fan_out_reconcile()
        logger.info("Sync engine started", tenants=len(self.registry.all()))

    def stop(self) -> None:
        self.scheduler.stop()
        self.orchestrator.stop()
        self.client.close()
        logger.info("Sync engine stopped")

    def get_stats(self) -> dict[str, Any]:
        stats = self.orchestrator.get_stats()
        stats["tenants"] = {
            t.id: {
                "status": t.sync_status.value,
                "enabled": t.sync_enabled,
                "last_synced_at": t.last_synced_at.isoformat() if t.last_synced_at else None,
                "last_error": t.last_error,
            }
            for t in self.registry.all()
        }
        return stats

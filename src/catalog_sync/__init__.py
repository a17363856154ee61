"""
Catalog Sync Engine

Keeps tenant-partitioned copies of shop catalogs (products, variants,
categories, pages) consistent with the upstream e-commerce platform.

Features:
- Full, webhook-driven incremental and scheduled reconcile syncs
- Four-window token bucket rate limiting per tenant
- Idempotent application of duplicate or out-of-order events
- Checkpoint/resume for syncs that die halfway
- Category trees with cycle breaking

Quick Start:
    pip install catalog-sync-engine
    catalog-sync test shop-1      # Verify credentials
    catalog-sync sync shop-1      # Run a full sync
    catalog-sync run --serve      # Run the service
"""

from catalog_sync.engine import SyncEngine
from catalog_sync.orchestrator import (
    SyncOrchestrator,
    SyncOutcome,
    SyncReport,
    TenantLockContention,
)
from catalog_sync.client import (
    CatalogClient,
    CatalogAPIError,
    UpstreamNotFound,
    UpstreamRejected,
    UpstreamUnavailable,
)
from catalog_sync.models import (
    CatalogEntity,
    EntityType,
    StoredEntity,
    SyncStatus,
)
from catalog_sync.rate_limiter import MultiWindowRateLimiter, RateLimitExceeded
from catalog_sync.ledger import IdempotencyLedger, LedgerConflict
from catalog_sync.categories import CyclicReference
from catalog_sync.store import CatalogStore, InMemoryCatalogStore, TenantIsolationError
from catalog_sync.tasks import SyncMode, SyncTask, TaskQueue
from catalog_sync.tenants import Tenant, TenantRegistry
from catalog_sync.webhooks import WebhookIngestor
from catalog_sync.state import StateManager, SyncCheckpoint

__version__ = "1.0.0"
__all__ = [
    # Engine
    "SyncEngine",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncReport",

    # API client
    "CatalogClient",
    "CatalogAPIError",
    "UpstreamNotFound",
    "UpstreamRejected",
    "UpstreamUnavailable",

    # Models
    "CatalogEntity",
    "EntityType",
    "StoredEntity",
    "SyncStatus",

    # Rate limiting
    "MultiWindowRateLimiter",
    "RateLimitExceeded",

    # Idempotency
    "IdempotencyLedger",
    "LedgerConflict",

    # Errors
    "CyclicReference",
    "TenantIsolationError",
    "TenantLockContention",

    # Store
    "CatalogStore",
    "InMemoryCatalogStore",

    # Tasks
    "SyncMode",
    "SyncTask",
    "TaskQueue",

    # Tenants and webhooks
    "Tenant",
    "TenantRegistry",
    "WebhookIngestor",

    # State management
    "StateManager",
    "SyncCheckpoint",
]

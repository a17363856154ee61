"""
Tenant registry and credential access.

A tenant is one installed shop. It is the isolation boundary for every
catalog entity, ledger record, rate budget and checkpoint.
"""

import threading
from datetime import datetime, timezone
from typing import Protocol

import structlog
from pydantic import BaseModel, field_validator

from catalog_sync.models import SyncStatus

logger = structlog.get_logger(__name__)

CLUSTER_BASE_URLS = {
    "eu1": "https://api.webshopapp.com",
    "us1": "https://api.shoplightspeed.com",
}


class UnknownTenant(KeyError):
    """Raised when a tenant id is not registered."""
    pass


class Tenant(BaseModel):
    """An installed shop."""

    id: str
    shop_id: int
    cluster: str = "eu1"
    language: str = "nl"
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced_at: datetime | None = None
    sync_enabled: bool = False
    last_error: str | None = None

    @field_validator("cluster")
    @classmethod
    def known_cluster(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in CLUSTER_BASE_URLS:
            raise ValueError(f"Unknown cluster '{v}'. Expected one of {sorted(CLUSTER_BASE_URLS)}")
        return v

    @property
    def base_url(self) -> str:
        return f"{CLUSTER_BASE_URLS[self.cluster]}/{self.language}/"


class Credentials(BaseModel):
    """Decrypted API key pair. Only ever held in memory."""

    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        masked = f"{self.api_key[:4]}..." if len(self.api_key) > 4 else "***"
        return f"Credentials(api_key='{masked}', api_secret='***')"

    __str__ = __repr__


class CredentialProvider(Protocol):
    """External credential store returning decrypted credentials."""

    def get(self, tenant_id: str) -> Credentials: ...


class StaticCredentialProvider:
    """In-memory provider, fed from configuration or tests."""

    def __init__(self, credentials: dict[str, Credentials] | None = None):
        self._credentials = dict(credentials or {})
        self._lock = threading.Lock()

    def set(self, tenant_id: str, credentials: Credentials) -> None:
        with self._lock:
            self._credentials[tenant_id] = credentials

    def remove(self, tenant_id: str) -> None:
        with self._lock:
            self._credentials.pop(tenant_id, None)

    def get(self, tenant_id: str) -> Credentials:
        with self._lock:
            try:
                return self._credentials[tenant_id]
            except KeyError:
                raise UnknownTenant(f"No credentials for tenant {tenant_id}") from None


class TenantRegistry:
    """Thread-safe registry of tenants and their sync status."""

    def __init__(self, tenants: list[Tenant] | None = None):
        self._tenants: dict[str, Tenant] = {t.id: t for t in tenants or []}
        self._lock = threading.Lock()

    def register(self, tenant: Tenant) -> Tenant:
        with self._lock:
            self._tenants[tenant.id] = tenant
        logger.info("Tenant registered", tenant_id=tenant.id, cluster=tenant.cluster)
        return tenant

    def get(self, tenant_id: str) -> Tenant:
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None:
                raise UnknownTenant(tenant_id)
            return tenant.model_copy()

    def __contains__(self, tenant_id: str) -> bool:
        with self._lock:
            return tenant_id in self._tenants

    def enable(self, tenant_id: str, install_verified: bool) -> bool:
        """
        Enable sync once the install signature gate has passed.

        The gate is evaluated by the caller; this only trusts its result.
        """
        if not install_verified:
            logger.warning("Install verification failed, sync stays disabled", tenant_id=tenant_id)
            return False
        with self._lock:
            if tenant_id not in self._tenants:
                raise UnknownTenant(tenant_id)
            self._tenants[tenant_id].sync_enabled = True
        logger.info("Sync enabled", tenant_id=tenant_id)
        return True

    def set_status(
        self,
        tenant_id: str,
        status: SyncStatus,
        error: str | None = None,
    ) -> None:
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None:
                return
            tenant.sync_status = status
            if status is SyncStatus.COMPLETED:
                tenant.last_synced_at = datetime.now(timezone.utc)
                tenant.last_error = None
            elif status is SyncStatus.FAILED:
                tenant.last_error = error

    def enabled_tenants(self) -> list[Tenant]:
        with self._lock:
            return [t.model_copy() for t in self._tenants.values() if t.sync_enabled]

    def all(self) -> list[Tenant]:
        with self._lock:
            return [t.model_copy() for t in self._tenants.values()]

    def remove(self, tenant_id: str) -> bool:
        with self._lock:
            return self._tenants.pop(tenant_id, None) is not None

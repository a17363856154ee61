"""
Upstream Catalog API Client

Synchronous multi-tenant HTTP client with:
- Per-tenant rate limiting (four-window token buckets)
- Retry with exponential backoff for transient errors (429, 5xx, network)
- Connection pooling shared across tenants
- Basic authentication per call, cluster-specific base URLs
- Per-item validation so one bad item never fails a page
"""

import logging
import threading
import time
from typing import Any

import httpx
import structlog
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

from catalog_sync.cache import BoundedTTLCache
from catalog_sync.models import (
    UPSTREAM_MODELS,
    EntityType,
    Page,
    RejectedItem,
    UpstreamItem,
)
from catalog_sync.rate_limiter import MultiWindowRateLimiter, RateLimitExceeded
from catalog_sync.tenants import CredentialProvider, Credentials, Tenant

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class CatalogAPIError(Exception):
    """Base exception for upstream API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        tenant_id: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.tenant_id = tenant_id

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


class UpstreamUnavailable(CatalogAPIError):
    """Transport failure, timeout or 5xx - retryable."""
    pass


class UpstreamRejected(CatalogAPIError):
    """4xx response - permanent for the item or request."""
    pass


class UpstreamNotFound(UpstreamRejected):
    """404 - the item no longer exists upstream."""
    pass


class UpstreamThrottled(CatalogAPIError):
    """429 from the upstream. Retried internally, surfaced as RateLimitExceeded."""

    def __init__(self, message: str, retry_after: float, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class SyncCancelled(Exception):
    """The tenant's sync was cancelled before the next upstream call."""
    pass


# ---------------------------------------------------------------------------
# Retry Configuration
# ---------------------------------------------------------------------------

def is_retryable_error(exception: BaseException) -> bool:
    """Determine if an exception should trigger an in-call retry."""
    if isinstance(exception, (UpstreamUnavailable, UpstreamThrottled)):
        return True
    if isinstance(exception, (httpx.TransportError, httpx.TimeoutException)):
        return True
    return False


def _parse_retry_after(response: httpx.Response, default: float = 1.0) -> float:
    value = response.headers.get("Retry-After")
    if value is None:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class CatalogClient:
    """
    Upstream catalog API client shared by all tenants.

    Every call resolves credentials for the tenant, takes a rate grant from
    the tenant's budget, then issues an authenticated request.

    Example:
        client = CatalogClient(limiter, credential_provider)

        with client:
            page = client.fetch_page(tenant, EntityType.PRODUCT)
            while True:
                handle(page.items)
                if page.done:
                    break
                page = client.fetch_page(tenant, EntityType.PRODUCT, page.next_cursor)
    """

    def __init__(
        self,
        rate_limiter: MultiWindowRateLimiter,
        credentials: CredentialProvider,
        page_size: int = 250,
        timeout: float = 30.0,
        max_retries: int = 3,
        max_wait: float = 5.0,
        retry_min_seconds: float = 1.0,
        retry_max_seconds: float = 20.0,
        credential_ttl_seconds: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            rate_limiter: Shared per-tenant limiter
            credentials: External credential store
            page_size: Items per listing page (upstream max is 250)
            timeout: Deadline per request in seconds
            max_retries: Attempts per call for transient errors
            max_wait: Longest a call may wait for a rate grant before
                raising RateLimitExceeded
            transport: Optional httpx transport (tests use MockTransport)
        """
        if not 1 <= page_size <= 250:
            raise ValueError("page_size must be between 1 and 250")

        self.rate_limiter = rate_limiter
        self.credentials = credentials
        self.page_size = page_size
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_wait = max_wait
        self.retry_min_seconds = retry_min_seconds
        self.retry_max_seconds = retry_max_seconds
        self._transport = transport

        self._credential_cache: BoundedTTLCache[str, Credentials] = BoundedTTLCache(
            max_size=1000,
            ttl_seconds=credential_ttl_seconds,
        )
        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()

        # Request counters for observability
        self._request_count = 0
        self._error_count = 0
        self._counter_lock = threading.Lock()

    def _build_http_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
            headers={"User-Agent": "catalog-sync-engine/1.0", "Accept": "application/json"},
            transport=self._transport,
        )

    def __enter__(self) -> "CatalogClient":
        with self._client_lock:
            if self._client is None:
                self._client = self._build_http_client()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        with self._client_lock:
            if self._client:
                self._client.close()
                self._client = None

    @property
    def client(self) -> httpx.Client:
        """Get HTTP client, creating if needed."""
        with self._client_lock:
            if self._client is None:
                self._client = self._build_http_client()
            return self._client

    def _credentials_for(self, tenant_id: str) -> Credentials:
        return self._credential_cache.get_or_load(
            tenant_id, lambda: self.credentials.get(tenant_id)
        )

    def forget_tenant(self, tenant_id: str) -> None:
        """Drop cached credentials (uninstall or key rotation)."""
        self._credential_cache.invalidate(tenant_id)

    def _count(self, error: bool = False) -> int:
        with self._counter_lock:
            if error:
                self._error_count += 1
            else:
                self._request_count += 1
            return self._request_count

    def _make_request(
        self,
        tenant: Tenant,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> dict[str, Any]:
        """
        Make a rate-limited, retrying request for one tenant.

        This is the core request method with all safety features.
        """
        log = logger.bind(tenant_id=tenant.id, path=path, method=method)

        @retry(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(
                multiplier=self.retry_min_seconds,
                min=self.retry_min_seconds,
                max=self.retry_max_seconds,
            ),
            before_sleep=before_sleep_log(log, logging.INFO),
            reraise=True,
        )
        def _do_request() -> dict[str, Any]:
            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelled(tenant.id)

            credentials = self._credentials_for(tenant.id)

            if not self.rate_limiter.acquire(tenant.id, self.max_wait, cancel_event):
                raise SyncCancelled(tenant.id)

            url = f"{tenant.base_url}{path}"
            request_id = self._count()
            log.debug("API request", request_id=request_id)

            start_time = time.monotonic()
            try:
                response = self.client.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    auth=(credentials.api_key, credentials.api_secret),
                )
            except (httpx.TransportError, httpx.TimeoutException) as e:
                self._count(error=True)
                raise UpstreamUnavailable(
                    f"Transport error: {e.__class__.__name__}: {e}",
                    tenant_id=tenant.id,
                ) from e
            elapsed = time.monotonic() - start_time

            log.debug(
                "API response",
                request_id=request_id,
                status_code=response.status_code,
                elapsed_ms=round(elapsed * 1000),
            )

            if response.status_code == 429:
                self._count(error=True)
                retry_after = _parse_retry_after(response)
                self.rate_limiter.throttle(tenant.id, retry_after)
                raise UpstreamThrottled(
                    "Upstream rate limit hit - will retry",
                    retry_after=retry_after,
                    status_code=429,
                    tenant_id=tenant.id,
                )

            if response.status_code >= 500:
                self._count(error=True)
                raise UpstreamUnavailable(
                    f"Server error {response.status_code} - will retry",
                    status_code=response.status_code,
                    response_body=response.text[:500],
                    tenant_id=tenant.id,
                )

            if response.status_code == 404:
                self._count(error=True)
                raise UpstreamNotFound(
                    f"Resource not found: {path}",
                    status_code=404,
                    tenant_id=tenant.id,
                )

            if response.status_code >= 400:
                self._count(error=True)
                raise UpstreamRejected(
                    f"API error: {response.text[:200]}",
                    status_code=response.status_code,
                    response_body=response.text[:500],
                    tenant_id=tenant.id,
                )

            try:
                data = response.json()
            except ValueError as e:
                self._count(error=True)
                raise UpstreamUnavailable(
                    f"Invalid JSON response: {e}",
                    status_code=response.status_code,
                    tenant_id=tenant.id,
                ) from e

            if not isinstance(data, dict):
                self._count(error=True)
                raise UpstreamUnavailable(
                    f"Expected a JSON object, got {type(data).__name__}",
                    status_code=response.status_code,
                    response_body=response.text[:500],
                    tenant_id=tenant.id,
                )
            return data

        try:
            return _do_request()
        except UpstreamThrottled as e:
            raise RateLimitExceeded(
                f"Upstream kept throttling tenant {tenant.id}",
                retry_after=e.retry_after,
                tenant_id=tenant.id,
            ) from e

    # -------------------------------------------------------------------------
    # Catalog reads
    # -------------------------------------------------------------------------

    def fetch_page(
        self,
        tenant: Tenant,
        entity_type: EntityType,
        cursor: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Page:
        """
        Fetch one page of a listing.

        The cursor is opaque to callers; None starts from the beginning.
        Items failing validation are returned in `Page.rejected`.
        """
        page_number = int(cursor) if cursor else 1
        data = self._make_request(
            tenant,
            "GET",
            f"{entity_type.resource}.json",
            params={"page": page_number, "limit": self.page_size},
            cancel_event=cancel_event,
        )

        raw_items = data.get(entity_type.resource)
        if raw_items is None:
            raw_items = data.get(entity_type.value, [])
        if not isinstance(raw_items, list):
            raise UpstreamUnavailable(
                f"Unexpected listing shape for {entity_type.resource}",
                tenant_id=tenant.id,
            )

        model = UPSTREAM_MODELS[entity_type]
        page = Page()
        for raw in raw_items:
            try:
                page.items.append(model.model_validate(raw))
            except ValidationError as e:
                upstream_id = raw.get("id") if isinstance(raw, dict) else None
                if not isinstance(upstream_id, int) or isinstance(upstream_id, bool):
                    upstream_id = None
                page.rejected.append(
                    RejectedItem(upstream_id=upstream_id, reason=_summarize_validation(e))
                )

        if len(raw_items) >= self.page_size:
            page.next_cursor = str(page_number + 1)

        logger.info(
            "Fetched page",
            tenant_id=tenant.id,
            entity_type=entity_type.value,
            page=page_number,
            count=len(raw_items),
            rejected=len(page.rejected),
        )
        return page

    def fetch_one(
        self,
        tenant: Tenant,
        entity_type: EntityType,
        upstream_id: int,
        cancel_event: threading.Event | None = None,
    ) -> UpstreamItem:
        """Fetch a single item. Malformed items raise UpstreamRejected."""
        data = self._make_request(
            tenant,
            "GET",
            f"{entity_type.resource}/{upstream_id}.json",
            cancel_event=cancel_event,
        )
        raw = data.get(entity_type.singular, data)
        try:
            return UPSTREAM_MODELS[entity_type].model_validate(raw)
        except ValidationError as e:
            raise UpstreamRejected(
                f"Invalid {entity_type.singular} {upstream_id}: {_summarize_validation(e)}",
                tenant_id=tenant.id,
            ) from e

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def register_webhook(
        self,
        tenant: Tenant,
        entity_group: EntityType,
        callback_url: str,
    ) -> int:
        """Subscribe to all actions on an item group. Returns subscription id."""
        data = self._make_request(
            tenant,
            "POST",
            "webhooks.json",
            json_body={
                "webhook": {
                    "isActive": True,
                    "itemGroup": entity_group.resource,
                    "itemAction": "*",
                    "language": tenant.language,
                    "format": "json",
                    "address": callback_url,
                }
            },
        )
        webhook = data.get("webhook", data)
        try:
            subscription_id = int(webhook["id"])
        except (KeyError, TypeError, ValueError) as e:
            raise UpstreamRejected(
                "Webhook registration returned no id",
                tenant_id=tenant.id,
            ) from e

        logger.info(
            "Webhook registered",
            tenant_id=tenant.id,
            item_group=entity_group.resource,
            subscription_id=subscription_id,
        )
        return subscription_id

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics for monitoring."""
        return {
            "request_count": self._request_count,
            "error_count": self._error_count,
            "error_rate": round(self._error_count / max(1, self._request_count), 4),
            "credential_cache": self._credential_cache.get_stats(),
            "rate_limiter": self.rate_limiter.get_stats(),
        }

    def health_check(self, tenant: Tenant) -> dict[str, Any]:
        """Verify API connectivity and credentials for one tenant."""
        try:
            data = self._make_request(tenant, "GET", "shop.json")
            shop = data.get("shop", {})
            return {
                "status": "healthy",
                "shop": shop.get("title", "unknown"),
                "tenant_id": tenant.id,
            }
        except UpstreamRejected as e:
            return {"status": "rejected", "message": str(e)}
        except (UpstreamUnavailable, RateLimitExceeded) as e:
            return {"status": "unavailable", "message": str(e)}


def _summarize_validation(error: ValidationError) -> str:
    parts = []
    for err in error.errors()[:3]:
        loc = ".".join(str(p) for p in err.get("loc", ())) or "item"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)

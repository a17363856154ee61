"""
Pytest configuration and fixtures for catalog sync tests.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from catalog_sync.client import SyncCancelled, UpstreamNotFound, UpstreamRejected
from catalog_sync.ledger import IdempotencyLedger
from catalog_sync.models import UPSTREAM_MODELS, EntityType, Page, RejectedItem
from catalog_sync.orchestrator import SyncOrchestrator
from catalog_sync.state import StateManager
from catalog_sync.store import InMemoryCatalogStore
from catalog_sync.tasks import TaskQueue
from catalog_sync.tenants import Credentials, StaticCredentialProvider, Tenant, TenantRegistry

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def version(n: int) -> str:
    """Upstream updatedAt string for version n."""
    return (BASE_TIME + timedelta(hours=n)).isoformat()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeUpstream:
    """
    In-memory stand-in for CatalogClient.

    Serves raw upstream payloads with offset cursors, validating items the
    same way the real client does. Errors queued in `failures` are raised
    by the next calls, one per call.
    """

    def __init__(self, page_size: int = 2):
        self.page_size = page_size
        self.items: dict[EntityType, list[dict]] = {t: [] for t in EntityType}
        self.failures: list[Exception] = []
        self.calls: list[tuple] = []
        self.on_call = None
        self._lock = threading.Lock()

    def _before_call(self, call: tuple, cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SyncCancelled(call[1])
        with self._lock:
            self.calls.append(call)
            failure = self.failures.pop(0) if self.failures else None
        if self.on_call is not None:
            self.on_call(call)
        if failure is not None:
            raise failure

    def fetch_page(self, tenant, entity_type, cursor=None, cancel_event=None) -> Page:
        self._before_call(("page", tenant.id, entity_type, cursor), cancel_event)
        start = int(cursor or 0)
        raw_items = self.items[entity_type][start:start + self.page_size]

        page = Page()
        for raw in raw_items:
            try:
                page.items.append(UPSTREAM_MODELS[entity_type].model_validate(raw))
            except ValidationError as e:
                page.rejected.append(RejectedItem(upstream_id=raw.get("id"), reason=str(e.errors()[0]["msg"])))
        if start + self.page_size < len(self.items[entity_type]):
            page.next_cursor = str(start + self.page_size)
        return page

    def fetch_one(self, tenant, entity_type, upstream_id, cancel_event=None):
        self._before_call(("one", tenant.id, entity_type, upstream_id), cancel_event)
        for raw in self.items[entity_type]:
            if raw.get("id") == upstream_id:
                try:
                    return UPSTREAM_MODELS[entity_type].model_validate(raw)
                except ValidationError as e:
                    raise UpstreamRejected(f"Invalid item: {e}", tenant_id=tenant.id) from e
        raise UpstreamNotFound(f"{entity_type.resource}/{upstream_id}", status_code=404)

    def forget_tenant(self, tenant_id: str) -> None:
        pass

    def get_stats(self) -> dict:
        return {"request_count": len(self.calls)}

    def page_calls(self, entity_type: EntityType | None = None) -> list[tuple]:
        return [c for c in self.calls if c[0] == "page" and (entity_type is None or c[2] is entity_type)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tenant():
    return Tenant(id="shop-1", shop_id=1001, cluster="eu1", language="nl", sync_enabled=True)


@pytest.fixture
def other_tenant():
    return Tenant(id="shop-2", shop_id=2002, cluster="us1", language="en", sync_enabled=True)


@pytest.fixture
def registry(tenant, other_tenant):
    return TenantRegistry([tenant, other_tenant])


@pytest.fixture
def credentials():
    return StaticCredentialProvider({
        "shop-1": Credentials(api_key="key-one", api_secret="secret-one"),
        "shop-2": Credentials(api_key="key-two", api_secret="secret-two"),
    })


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def store():
    return InMemoryCatalogStore()


@pytest.fixture
def ledger():
    return IdempotencyLedger()


@pytest.fixture
def queue():
    return TaskQueue()


@pytest.fixture
def state(tmp_path):
    return StateManager(tmp_path / "state")


@pytest.fixture
def orchestrator(upstream, store, ledger, registry, state, queue):
    return SyncOrchestrator(
        upstream,
        store,
        ledger,
        registry,
        state,
        queue=queue,
        max_workers=2,
        max_attempts=3,
        backoff_base=0.01,
        backoff_max=0.05,
    )


@pytest.fixture
def make_product():
    """Factory for raw product payloads."""
    def _make(upstream_id: int, v: int = 1, **fields) -> dict:
        data = {
            "id": upstream_id,
            "createdAt": version(0),
            "updatedAt": version(v),
            "title": f"Product {upstream_id}",
            "fulltitle": f"Product {upstream_id} v{v}",
            "description": "<p>Great <b>product</b></p>",
            "visibility": "visible",
        }
        data.update(fields)
        return data
    return _make


@pytest.fixture
def make_variant():
    def _make(upstream_id: int, product_id: int, v: int = 1, **fields) -> dict:
        data = {
            "id": upstream_id,
            "createdAt": version(0),
            "updatedAt": version(v),
            "title": f"Variant {upstream_id}",
            "sku": f"SKU-{upstream_id}",
            "ean": f"87{upstream_id:011d}",
            "priceIncl": 19.95,
            "stockLevel": 3,
            "product": {"resource": {"id": product_id}},
        }
        data.update(fields)
        return data
    return _make


@pytest.fixture
def make_category():
    def _make(upstream_id: int, parent_id: int | None = None, v: int = 1, **fields) -> dict:
        data = {
            "id": upstream_id,
            "createdAt": version(0),
            "updatedAt": version(v),
            "title": f"Category {upstream_id}",
            "parent": {"resource": {"id": parent_id}} if parent_id else False,
        }
        data.update(fields)
        return data
    return _make


@pytest.fixture
def make_page():
    def _make(upstream_id: int, v: int = 1, **fields) -> dict:
        data = {
            "id": upstream_id,
            "createdAt": version(0),
            "updatedAt": version(v),
            "title": f"Page {upstream_id}",
            "content": "About our shop",
        }
        data.update(fields)
        return data
    return _make

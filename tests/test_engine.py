"""
End-to-end tests of the wired engine against a mocked upstream.
"""

import json
import re
import time

import httpx
import pytest

from catalog_sync.config import SyncConfig, TenantConfig
from catalog_sync.engine import SyncEngine
from catalog_sync.models import EntityType, SyncStatus
from catalog_sync.orchestrator import SyncOutcome
from catalog_sync.security import compute_install_signature, compute_webhook_signature
from catalog_sync.tasks import SyncMode
from catalog_sync.tenants import Tenant

SECRET = "app-secret"
ITEM_PATH = re.compile(r"^/nl/(\w+)/(\d+)\.json$")
LIST_PATH = re.compile(r"^/nl/(\w+)\.json$")
SINGULAR = {"categories": "category", "products": "product", "variants": "variant", "textpages": "textpage"}


class FakeShop:
    """Serves a small catalog the way the upstream API does."""

    def __init__(self):
        self.resources: dict[str, list[dict]] = {
            "categories": [],
            "products": [],
            "variants": [],
            "textpages": [],
        }
        self.requests: list[httpx.Request] = []
        self.webhooks: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path == "/nl/webhooks.json":
            self.webhooks.append(json.loads(request.content)["webhook"])
            return httpx.Response(201, json={"webhook": {"id": 900 + len(self.webhooks)}})

        match = ITEM_PATH.match(path)
        if match:
            resource, item_id = match.group(1), int(match.group(2))
            singular = SINGULAR[resource]
            for item in self.resources.get(resource, []):
                if item["id"] == item_id:
                    return httpx.Response(200, json={singular: item})
            return httpx.Response(404, json={"error": "not found"})

        match = LIST_PATH.match(path)
        if match and match.group(1) in self.resources:
            page = int(request.url.params.get("page", 1))
            limit = int(request.url.params.get("limit", 250))
            items = self.resources[match.group(1)][(page - 1) * limit:page * limit]
            return httpx.Response(200, json={match.group(1): items})

        return httpx.Response(404, json={"error": "no route"})


@pytest.fixture
def shop(make_category, make_product, make_variant, make_page):
    shop = FakeShop()
    shop.resources["categories"] = [make_category(1), make_category(2, parent_id=1)]
    shop.resources["products"] = [make_product(i) for i in (1, 2, 3)]
    shop.resources["variants"] = [make_variant(10, 1), make_variant(20, 2), make_variant(30, 3)]
    shop.resources["textpages"] = [make_page(1)]
    return shop


@pytest.fixture
def config(tmp_path):
    return SyncConfig(
        app_key="app-key",
        app_secret=SECRET,
        state_dir=str(tmp_path / "state"),
        webhook_url="https://sync.example.com",
        page_size=2,
        max_workers=2,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        tenants=[
            TenantConfig(id="shop-1", shop_id=1001, api_key="key-one", api_secret="secret-one"),
        ],
    )


@pytest.fixture
def engine(config, shop):
    engine = SyncEngine(config, transport=httpx.MockTransport(shop))
    yield engine
    engine.stop()


def test_configured_tenant_is_enabled(engine):
    tenant = engine.registry.get("shop-1")
    assert tenant.sync_enabled
    assert tenant.sync_status is SyncStatus.PENDING


def test_full_sync(engine, shop):
    report = engine.sync_now("shop-1")

    assert report.outcome is SyncOutcome.COMPLETED
    assert engine.store.count("shop-1", EntityType.PRODUCT) == 3
    assert engine.store.count("shop-1", EntityType.VARIANT) == 3
    assert engine.store.get("shop-1", EntityType.CATEGORY, 2).parent_id == 1
    assert engine.store.get("shop-1", EntityType.PAGE, 1) is not None
    assert engine.registry.get("shop-1").sync_status is SyncStatus.COMPLETED

    listed = [r.url.path for r in shop.requests]
    assert listed[0] == "/nl/categories.json"
    assert all(r.headers["Authorization"].startswith("Basic ") for r in shop.requests)


def test_webhook_to_store(engine, shop, make_product):
    engine.sync_now("shop-1")
    shop.resources["products"][1] = make_product(2, v=2, title="Renamed")

    body = json.dumps({"itemGroup": "products", "itemAction": "updated", "product": {"id": 2}}).encode()
    result = engine.ingestor.accept("shop-1", body, {"x-signature": compute_webhook_signature(body, SECRET)})
    assert result.queued

    task = engine.queue.take(lambda _: True, timeout=0)
    report = engine.orchestrator.run_task(task)

    assert report.applied == 1
    assert engine.store.get("shop-1", EntityType.PRODUCT, 2).fields["title"] == "Renamed"


def test_deleted_upstream_product_is_removed_on_reconcile(engine, shop):
    engine.sync_now("shop-1")
    shop.resources["products"].pop()
    shop.resources["variants"].pop()

    report = engine.sync_now("shop-1", SyncMode.RECONCILE)

    # Variant 30 goes with its product
    assert report.pruned == 1
    assert engine.store.get("shop-1", EntityType.PRODUCT, 3) is None
    assert engine.store.get("shop-1", EntityType.VARIANT, 30) is None


def test_install_tenant(engine):
    params = {"language": "en", "shop_id": "2002", "timestamp": str(int(time.time())), "token": "t"}
    params["signature"] = compute_install_signature(params, SECRET)

    installed = engine.install_tenant(Tenant(id="shop-2", shop_id=2002, cluster="us1", language="en"), params)

    assert installed
    assert engine.registry.get("shop-2").sync_enabled
    assert [t.mode for t in engine.queue.pending("shop-2")] == [SyncMode.FULL]


def test_install_with_bad_signature_stays_disabled(engine):
    params = {"language": "en", "shop_id": "2002", "timestamp": "1", "token": "t", "signature": "forged"}

    assert not engine.install_tenant(Tenant(id="shop-2", shop_id=2002), params)
    assert not engine.registry.get("shop-2").sync_enabled
    assert engine.queue.pending("shop-2") == []


def test_register_webhooks(engine, shop):
    ids = engine.register_webhooks("shop-1")

    assert set(ids) == {"categories", "products", "variants", "pages"}
    assert {w["itemGroup"] for w in shop.webhooks} == {"categories", "products", "variants", "textpages"}
    assert all(w["address"] == "https://sync.example.com/webhooks/shop-1" for w in shop.webhooks)


def test_register_webhooks_needs_url(config, shop):
    config.webhook_url = None
    engine = SyncEngine(config, transport=httpx.MockTransport(shop))

    with pytest.raises(ValueError):
        engine.register_webhooks("shop-1")
    engine.stop()


def test_uninstall(engine):
    engine.sync_now("shop-1")

    engine.uninstall_tenant("shop-1")

    assert engine.store.count("shop-1") == 0
    assert "shop-1" not in engine.registry
    assert len(engine.ledger) == 0


def test_service_runs_initial_reconcile(engine):
    engine.start(initial_reconcile=True)

    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        if engine.registry.get("shop-1").sync_status is SyncStatus.COMPLETED:
            break
        time.sleep(0.05)

    assert engine.registry.get("shop-1").sync_status is SyncStatus.COMPLETED
    stats = engine.get_stats()
    assert stats["tenants"]["shop-1"]["status"] == "Completed"
    assert stats["workers"] == 2

"""
Tests for webhook ingestion.
"""

import json
from datetime import timedelta

import pytest

from catalog_sync.models import EntityType
from catalog_sync.security import compute_webhook_signature
from catalog_sync.tasks import SyncMode, SyncTask
from catalog_sync.tenants import Tenant
from catalog_sync.webhooks import RejectReason, WebhookIngestor

from conftest import BASE_TIME, version

SECRET = "app-secret"


def delivery(data):
    body = json.dumps(data).encode()
    return body, {"X-Signature": compute_webhook_signature(body, SECRET)}


@pytest.fixture
def ingestor(registry, queue):
    return WebhookIngestor(registry, queue, SECRET)


class TestAccept:

    def test_product_update_is_queued(self, ingestor, queue):
        body, headers = delivery({
            "itemGroup": "products",
            "itemAction": "updated",
            "product": {"id": 42, "updatedAt": version(3)},
        })

        result = ingestor.accept("shop-1", body, headers)

        assert result.accepted
        assert result.queued
        task = queue.pending("shop-1")[0]
        assert task.mode is SyncMode.INCREMENTAL
        assert (task.entity_type, task.entity_id, task.action) == (EntityType.PRODUCT, 42, "updated")
        assert task.version == BASE_TIME + timedelta(hours=3)

    def test_group_and_action_from_headers(self, ingestor, queue):
        body, headers = delivery({"variant": {"id": 7}})
        headers.update({"x-group": "variants", "x-action": "deleted"})

        result = ingestor.accept("shop-1", body, headers)

        assert result.accepted
        assert (result.task.entity_type, result.task.entity_id, result.task.action) == (
            EntityType.VARIANT,
            7,
            "deleted",
        )

    def test_textpages_group_maps_to_pages(self, ingestor):
        body, headers = delivery({"itemGroup": "textpages", "textpage": {"id": 3}})
        assert ingestor.accept("shop-1", body, headers).task.entity_type is EntityType.PAGE

    def test_event_without_id_refreshes_group(self, ingestor):
        body, headers = delivery({"itemGroup": "categories", "itemAction": "created"})

        result = ingestor.accept("shop-1", body, headers)

        assert result.accepted
        assert result.task.entity_id is None

    def test_parsed_body_is_signed_as_compact_json(self, ingestor):
        data = {"itemGroup": "products", "product": {"id": 1}}
        signature = compute_webhook_signature(json.dumps(data, separators=(",", ":")).encode(), SECRET)

        assert ingestor.accept("shop-1", data, {"x-signature": signature}).accepted

    def test_duplicate_delivery_collapses(self, ingestor, queue):
        body, headers = delivery({"itemGroup": "products", "product": {"id": 1}})

        first = ingestor.accept("shop-1", body, headers)
        second = ingestor.accept("shop-1", body, headers)

        assert first.accepted and second.accepted
        assert first.queued and not second.queued
        assert len(queue) == 1

    def test_absorbed_by_pending_full_sync(self, ingestor, queue):
        queue.put(SyncTask("shop-1", SyncMode.FULL))
        body, headers = delivery({"itemGroup": "products", "product": {"id": 1}})

        result = ingestor.accept("shop-1", body, headers)

        assert result.accepted
        assert not result.queued
        assert [t.mode for t in queue.pending("shop-1")] == [SyncMode.FULL]


class TestReject:

    def test_unknown_tenant(self, ingestor, queue):
        body, headers = delivery({"itemGroup": "products"})
        result = ingestor.accept("ghost", body, headers)

        assert result.reason is RejectReason.UNKNOWN_TENANT
        assert len(queue) == 0

    def test_sync_disabled(self, ingestor, registry):
        registry.register(Tenant(id="shop-3", shop_id=3003))
        body, headers = delivery({"itemGroup": "products"})

        assert ingestor.accept("shop-3", body, headers).reason is RejectReason.SYNC_DISABLED

    def test_bad_signature(self, ingestor, queue):
        body, _ = delivery({"itemGroup": "products", "product": {"id": 1}})

        result = ingestor.accept("shop-1", body, {"x-signature": "0" * 32})

        assert result.reason is RejectReason.BAD_SIGNATURE
        assert len(queue) == 0

    def test_missing_signature(self, ingestor):
        body, _ = delivery({"itemGroup": "products"})
        assert ingestor.accept("shop-1", body, {}).reason is RejectReason.BAD_SIGNATURE

    def test_invalid_json(self, ingestor):
        body = b"{not json"
        headers = {"x-signature": compute_webhook_signature(body, SECRET)}
        assert ingestor.accept("shop-1", body, headers).reason is RejectReason.MALFORMED

    def test_missing_group(self, ingestor):
        body, headers = delivery({"product": {"id": 1}})
        assert ingestor.accept("shop-1", body, headers).reason is RejectReason.MALFORMED

    def test_unknown_group(self, ingestor):
        body, headers = delivery({"itemGroup": "orders", "order": {"id": 1}})

        result = ingestor.accept("shop-1", body, headers)

        assert result.reason is RejectReason.UNKNOWN_GROUP
        assert result.detail == "orders"

    @pytest.mark.parametrize("item", [
        {"id": "abc"},
        {"id": 1, "updatedAt": "not a date"},
    ])
    def test_invalid_item(self, ingestor, item):
        body, headers = delivery({"itemGroup": "products", "product": item})
        assert ingestor.accept("shop-1", body, headers).reason is RejectReason.MALFORMED

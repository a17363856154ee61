"""
Tests for the in-memory catalog store and tenant scopes.
"""

from datetime import datetime, timezone

import pytest

from catalog_sync.models import CatalogEntity, EntityType, UpstreamProduct
from catalog_sync.search import SearchConfig
from catalog_sync.store import InMemoryCatalogStore, TenantIsolationError, TenantScope

V1 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def entity(tenant_id, entity_type, upstream_id, **kwargs) -> CatalogEntity:
    return CatalogEntity(
        tenant_id=tenant_id,
        entity_type=entity_type,
        upstream_id=upstream_id,
        version=V1,
        **kwargs,
    )


class TestUpsert:

    def test_upsert_is_keyed_on_tenant_and_upstream_id(self, store):
        first = store.upsert("shop-1", entity("shop-1", EntityType.PRODUCT, 1))
        again = store.upsert("shop-1", entity("shop-1", EntityType.PRODUCT, 1))
        other = store.upsert("shop-2", entity("shop-2", EntityType.PRODUCT, 1))

        assert again.internal_id == first.internal_id
        assert again.revision == 2
        assert other.internal_id != first.internal_id
        assert store.count("shop-1") == 1
        assert store.count("shop-2") == 1

    def test_store_refuses_foreign_entity(self, store):
        with pytest.raises(TenantIsolationError):
            store.upsert("shop-1", entity("shop-2", EntityType.PRODUCT, 1))
        assert store.count("shop-1") == 0

    def test_scope_refuses_foreign_entity(self, store):
        scope = TenantScope(store, "shop-1")
        with pytest.raises(TenantIsolationError):
            scope.upsert(entity("shop-2", EntityType.PRODUCT, 1))

    def test_scope_reads_only_its_tenant(self, store):
        store.upsert("shop-1", entity("shop-1", EntityType.PRODUCT, 1))
        store.upsert("shop-2", entity("shop-2", EntityType.PRODUCT, 2))

        scope = store.scope("shop-1")
        assert [r.upstream_id for r in scope.list(EntityType.PRODUCT)] == [1]
        assert scope.get(EntityType.PRODUCT, 2) is None

    def test_returned_rows_are_copies(self, store):
        stored = store.upsert("shop-1", entity("shop-1", EntityType.PRODUCT, 1))
        stored.fields["title"] = "mutated"
        assert "title" not in store.get("shop-1", EntityType.PRODUCT, 1).fields


class TestDelete:

    def test_deleting_product_removes_its_variants(self, store):
        store.upsert("shop-1", entity("shop-1", EntityType.PRODUCT, 1))
        store.upsert("shop-1", entity("shop-1", EntityType.VARIANT, 10, product_upstream_id=1))
        store.upsert("shop-1", entity("shop-1", EntityType.VARIANT, 11, product_upstream_id=1))
        store.upsert("shop-1", entity("shop-1", EntityType.VARIANT, 20, product_upstream_id=2))

        assert store.delete("shop-1", EntityType.PRODUCT, 1) is True
        assert [r.upstream_id for r in store.list("shop-1", EntityType.VARIANT)] == [20]

    def test_deleting_category_detaches_children(self, store):
        store.upsert("shop-1", entity("shop-1", EntityType.CATEGORY, 1))
        store.upsert("shop-1", entity("shop-1", EntityType.CATEGORY, 2))
        store.set_parent("shop-1", 2, 1)

        store.delete("shop-1", EntityType.CATEGORY, 1)
        assert store.get("shop-1", EntityType.CATEGORY, 2).parent_id is None

    def test_delete_missing(self, store):
        assert store.delete("shop-1", EntityType.PRODUCT, 1) is False

    def test_set_parent_requires_parent_in_tenant(self, store):
        store.upsert("shop-1", entity("shop-1", EntityType.CATEGORY, 1))
        store.upsert("shop-2", entity("shop-2", EntityType.CATEGORY, 2))

        with pytest.raises(TenantIsolationError):
            store.set_parent("shop-1", 1, 2)

    def test_drop_tenant(self, store):
        store.upsert("shop-1", entity("shop-1", EntityType.PRODUCT, 1))
        store.upsert("shop-2", entity("shop-2", EntityType.PRODUCT, 1))

        assert store.drop_tenant("shop-1") == 1
        assert store.count("shop-1") == 0
        assert store.count("shop-2") == 1


class TestSearchMaintenance:

    def test_upsert_builds_search_document(self, store, make_product):
        product = UpstreamProduct.model_validate(make_product(1, title="Blue Mug"))
        store.scope("shop-1").upsert(product.to_entity("shop-1", EntityType.PRODUCT))

        row = store.get("shop-1", EntityType.PRODUCT, 1)
        assert "Blue Mug" in row.search_document["A"]
        assert row.search_document["C"] == "Great product"
        assert store.dirty_count("shop-1") == 0

    def test_deferred_refresh(self, make_product):
        store = InMemoryCatalogStore(auto_refresh=False)
        product = UpstreamProduct.model_validate(make_product(1))
        store.scope("shop-1").upsert(product.to_entity("shop-1", EntityType.PRODUCT))

        assert store.dirty_count("shop-1") == 1
        assert store.get("shop-1", EntityType.PRODUCT, 1).search_document == {}

        assert store.refresh_search("shop-1") == 1
        assert store.get("shop-1", EntityType.PRODUCT, 1).search_document

    def test_config_change_rebuilds_documents(self, store, make_product):
        product = UpstreamProduct.model_validate(make_product(1, title="Blue Mug"))
        store.scope("shop-1").upsert(product.to_entity("shop-1", EntityType.PRODUCT))

        config = SearchConfig.model_validate([{"field": "title", "priority": 4}])
        store.configure_search("shop-1", config)

        row = store.get("shop-1", EntityType.PRODUCT, 1)
        assert row.search_document == {"D": "Blue Mug"}

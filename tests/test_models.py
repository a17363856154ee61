"""
Tests for upstream payload models.
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from catalog_sync.models import (
    EntityType,
    UpstreamCategory,
    UpstreamPage,
    UpstreamProduct,
    UpstreamVariant,
    ensure_utc,
    resource_id,
)

from conftest import BASE_TIME


class TestUpstreamProduct:
    """Tests for UpstreamProduct."""

    def test_parse_product(self, make_product):
        """Test parsing a product from API response."""
        product = UpstreamProduct.model_validate(make_product(7, v=2))

        assert product.id == 7
        assert product.title == "Product 7"
        assert product.version == datetime(2024, 3, 1, 14, 0, tzinfo=timezone.utc)

    def test_missing_updated_at_is_invalid(self, make_product):
        data = make_product(1)
        del data["updatedAt"]

        with pytest.raises(ValidationError):
            UpstreamProduct.model_validate(data)

    def test_naive_timestamp_assumed_utc(self, make_product):
        product = UpstreamProduct.model_validate(make_product(1, updatedAt="2024-03-01T12:00:00"))
        assert product.version == BASE_TIME

    def test_offset_timestamp_normalized(self, make_product):
        product = UpstreamProduct.model_validate(make_product(1, updatedAt="2024-03-01T14:00:00+02:00"))
        assert product.version == BASE_TIME
        assert product.version.tzinfo == timezone.utc

    def test_brand_title_from_embedded_resource(self, make_product):
        product = UpstreamProduct.model_validate(make_product(
            1,
            brand={"resource": {"id": 3, "embedded": {"title": "Acme"}}},
        ))
        assert product.brand_title == "Acme"
        assert product.search_fields()["brand"] == "Acme"

    def test_no_brand(self, make_product):
        product = UpstreamProduct.model_validate(make_product(1, brand=False))
        assert product.brand_title is None

    def test_tags_joined(self, make_product):
        product = UpstreamProduct.model_validate(make_product(1, tags=["mugs", "kitchen"]))
        assert product.search_fields()["tags"] == "mugs kitchen"

    def test_to_entity(self, make_product):
        product = UpstreamProduct.model_validate(make_product(1))
        entity = product.to_entity("shop-1", EntityType.PRODUCT)

        assert entity.tenant_id == "shop-1"
        assert entity.upstream_id == 1
        assert entity.version == product.version
        assert entity.fields["visibility"] == "visible"
        assert "id" not in entity.fields


class TestUpstreamVariant:

    def test_product_from_resource_link(self, make_variant):
        variant = UpstreamVariant.model_validate(make_variant(10, 1))

        assert variant.product_id == 1
        assert variant.to_entity("shop-1", EntityType.VARIANT).product_upstream_id == 1

    def test_product_from_flat_id(self, make_variant):
        data = make_variant(10, 1)
        del data["product"]
        data["productId"] = 4

        assert UpstreamVariant.model_validate(data).product_id == 4

    def test_orphan_variant_is_invalid(self, make_variant):
        """Variants must belong to exactly one product."""
        data = make_variant(10, 1)
        data["product"] = False

        with pytest.raises(ValidationError):
            UpstreamVariant.model_validate(data)

    def test_search_fields(self, make_variant):
        fields = UpstreamVariant.model_validate(make_variant(10, 1, articleCode="AC-1")).search_fields()
        assert fields["sku"] == "SKU-10"
        assert fields["article_code"] == "AC-1"


class TestUpstreamCategory:

    def test_parent_link(self, make_category):
        category = UpstreamCategory.model_validate(make_category(2, parent_id=1))

        assert category.parent_id == 1
        assert category.to_entity("shop-1", EntityType.CATEGORY).parent_upstream_id == 1

    def test_root_category(self, make_category):
        assert UpstreamCategory.model_validate(make_category(1)).parent_id is None


class TestUpstreamPage:

    def test_parse_page(self, make_page):
        page = UpstreamPage.model_validate(make_page(3))

        assert page.visible is True
        assert page.search_fields() == {"title": "Page 3", "content": "About our shop"}


class TestHelpers:

    @pytest.mark.parametrize("value, expected", [
        (5, 5),
        ("5", 5),
        ({"resource": {"id": 5}}, 5),
        ({"id": 5}, 5),
        (False, None),
        (0, None),
        (None, None),
        ({"resource": False}, None),
        ("abc", None),
    ])
    def test_resource_id(self, value, expected):
        assert resource_id(value) == expected

    def test_ensure_utc(self):
        assert ensure_utc(None) is None
        assert ensure_utc(datetime(2024, 1, 1)).tzinfo == timezone.utc

    def test_entity_type_resources(self):
        assert EntityType.PAGE.resource == "textpages"
        assert EntityType.PRODUCT.resource == "products"
        assert EntityType.VARIANT.singular == "variant"

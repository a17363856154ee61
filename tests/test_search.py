"""
Tests for search field configuration and document building.
"""

import pytest
from pydantic import ValidationError

from catalog_sync.search import (
    DEFAULT_SEARCH_CONFIG,
    SearchConfig,
    build_search_document,
    clean_text,
)


class TestSearchConfig:

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError, match="Unknown search field"):
            SearchConfig.model_validate([{"field": "price", "priority": 1}])

    def test_duplicate_field_rejected(self):
        with pytest.raises(ValidationError, match="Duplicate"):
            SearchConfig.model_validate([{"field": "title"}, {"field": "title", "priority": 3}])

    def test_priority_bounds(self):
        with pytest.raises(ValidationError):
            SearchConfig.model_validate([{"field": "title", "priority": 5}])

    def test_enabled_sorted_by_priority(self):
        config = SearchConfig.model_validate([
            {"field": "description", "priority": 3},
            {"field": "sku", "priority": 1, "enabled": False},
            {"field": "title", "priority": 1},
        ])
        assert [f.field.value for f in config.enabled] == ["title", "description"]

    def test_default_config(self):
        weights = {f.field.value: f.weight for f in DEFAULT_SEARCH_CONFIG.enabled}
        assert weights["title"] == "A"
        assert weights["brand"] == "B"
        assert weights["content"] == "D"


class TestBuildDocument:

    def test_weights_group_fields(self):
        source = {"title": "Blue Mug", "sku": "MUG-1", "description": "<p>Holds <b>tea</b></p>"}

        document = build_search_document(source, DEFAULT_SEARCH_CONFIG)

        assert document == {"A": "Blue Mug MUG-1", "C": "Holds tea"}

    def test_disabled_and_missing_fields_contribute_nothing(self):
        config = SearchConfig.model_validate([
            {"field": "title", "priority": 1, "enabled": False},
            {"field": "ean", "priority": 2},
        ])
        assert build_search_document({"title": "Blue Mug"}, config) == {}

    def test_clean_text(self):
        assert clean_text("<p>Fish &amp; chips</p>\n\n<br/>daily ") == "Fish & chips daily"
        assert clean_text(None) == ""

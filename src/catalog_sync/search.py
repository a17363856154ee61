"""
Search field configuration and search document building.

Each tenant configures which catalog fields feed full-text search and
with what priority. The store turns an entity's searchable values into a
weighted search document (weights A-D, A highest) whenever the entity is
marked dirty.
"""

import html
import re
from enum import Enum
from typing import Callable

from pydantic import BaseModel, Field, RootModel, field_validator, model_validator


class SearchableField(str, Enum):
    """Fields allowed to feed the search vector."""

    TITLE = "title"
    FULLTITLE = "fulltitle"
    DESCRIPTION = "description"
    CONTENT = "content"
    SKU = "sku"
    EAN = "ean"
    ARTICLE_CODE = "article_code"
    BRAND = "brand"
    TAGS = "tags"


# Priority 1 is the strongest
PRIORITY_WEIGHTS = {1: "A", 2: "B", 3: "C", 4: "D"}


class SearchField(BaseModel):
    field: SearchableField
    enabled: bool = True
    priority: int = Field(2, ge=1, le=4)

    @property
    def weight(self) -> str:
        return PRIORITY_WEIGHTS[self.priority]


class SearchConfig(RootModel[list[SearchField]]):
    """Ordered list of search fields for one tenant."""

    @model_validator(mode="after")
    def unique_fields(self) -> "SearchConfig":
        seen: set[SearchableField] = set()
        for entry in self.root:
            if entry.field in seen:
                raise ValueError(f"Duplicate search field '{entry.field.value}'")
            seen.add(entry.field)
        return self

    @field_validator("root", mode="before")
    @classmethod
    def reject_unknown(cls, v):
        allowed = {f.value for f in SearchableField}
        for entry in v or []:
            name = entry.get("field") if isinstance(entry, dict) else getattr(entry, "field", None)
            name = name.value if isinstance(name, SearchableField) else name
            if name not in allowed:
                raise ValueError(f"Unknown search field '{name}'. Allowed: {sorted(allowed)}")
        return v

    @property
    def enabled(self) -> list[SearchField]:
        """Enabled fields, strongest priority first, keeping list order for ties."""
        return sorted((f for f in self.root if f.enabled), key=lambda f: f.priority)


DEFAULT_SEARCH_CONFIG = SearchConfig.model_validate([
    {"field": "title", "priority": 1},
    {"field": "fulltitle", "priority": 1},
    {"field": "sku", "priority": 1},
    {"field": "ean", "priority": 1},
    {"field": "article_code", "priority": 2},
    {"field": "brand", "priority": 2},
    {"field": "tags", "priority": 3},
    {"field": "description", "priority": 3},
    {"field": "content", "priority": 4},
])

SearchConfigProvider = Callable[[str], SearchConfig]


def default_search_config(tenant_id: str) -> SearchConfig:
    return DEFAULT_SEARCH_CONFIG


_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


def clean_text(value: str | None) -> str:
    """Strip markup and collapse whitespace."""
    if not value:
        return ""
    text = _TAG_RE.sub(" ", value)
    text = html.unescape(text)
    return _SPACE_RE.sub(" ", text).strip()


def build_search_document(source: dict[str, str], config: SearchConfig) -> dict[str, str]:
    """
    Build a weighted search document from an entity's searchable values.

    Returns a mapping of weight letter to text. Fields the entity does not
    have, or that are empty, contribute nothing.
    """
    document: dict[str, list[str]] = {}
    for entry in config.enabled:
        text = clean_text(source.get(entry.field.value))
        if text:
            document.setdefault(entry.weight, []).append(text)
    return {weight: " ".join(parts) for weight, parts in sorted(document.items())}

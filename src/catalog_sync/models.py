"""
Pydantic models for the upstream catalog API and the sync engine.

Upstream models give type-safe parsing of catalog payloads and convert
into the engine's tenant-scoped CatalogEntity representation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class EntityType(str, Enum):
    """Catalog entity kinds kept in sync."""

    CATEGORY = "categories"
    PRODUCT = "products"
    VARIANT = "variants"
    PAGE = "pages"

    @property
    def resource(self) -> str:
        """Upstream REST resource name."""
        return "textpages" if self is EntityType.PAGE else self.value

    @property
    def singular(self) -> str:
        """Key wrapping a single item in upstream responses."""
        return {
            EntityType.CATEGORY: "category",
            EntityType.PRODUCT: "product",
            EntityType.VARIANT: "variant",
            EntityType.PAGE: "textpage",
        }[self]


# Full sync order: categories first so products can reference them,
# products before the variants they own.
SYNC_ORDER = (
    EntityType.CATEGORY,
    EntityType.PRODUCT,
    EntityType.VARIANT,
    EntityType.PAGE,
)


class SyncStatus(str, Enum):
    PENDING = "Pending"
    SYNCING = "Syncing"
    COMPLETED = "Completed"
    FAILED = "Failed"


def ensure_utc(dt: datetime | None) -> datetime | None:
    """
    Ensure datetime has UTC timezone.

    Versions are compared across payloads, so naive timestamps from the
    API are assumed to be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def resource_id(value: Any) -> int | None:
    """
    Extract an id from the upstream reference shapes.

    The API links related items as ``{"resource": {"id": 1}}``, a bare id,
    or ``0``/``false`` for "no reference".
    """
    if value in (None, False, 0, "", "0"):
        return None
    if isinstance(value, dict):
        resource = value.get("resource", value)
        if isinstance(resource, dict):
            return resource_id(resource.get("id"))
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Upstream payloads
# ---------------------------------------------------------------------------

class UpstreamItem(BaseModel):
    """Fields shared by every catalog item."""

    model_config = {"extra": "allow", "populate_by_name": True}

    id: int
    created_at: datetime | None = Field(None, alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def normalize_timestamps(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @property
    def version(self) -> datetime:
        """Upstream version used by the idempotency ledger."""
        return self.updated_at

    def search_fields(self) -> dict[str, str]:
        """Raw values of searchable fields, keyed by field name."""
        return {}

    def to_entity(self, tenant_id: str, entity_type: "EntityType") -> "CatalogEntity":
        return CatalogEntity(
            tenant_id=tenant_id,
            entity_type=entity_type,
            upstream_id=self.id,
            version=self.version,
            fields=self.model_dump(mode="json", exclude={"id"}),
            search_source=self.search_fields(),
        )


class UpstreamProduct(UpstreamItem):
    title: str = ""
    fulltitle: str | None = None
    description: str | None = None
    content: str | None = None
    url: str | None = None
    visibility: str | None = None
    brand: Any = None
    tags: Any = None

    @property
    def brand_title(self) -> str | None:
        if isinstance(self.brand, dict):
            resource = self.brand.get("resource", {})
            embedded = resource.get("embedded", {}) if isinstance(resource, dict) else {}
            return embedded.get("title") or None
        return self.brand or None

    def search_fields(self) -> dict[str, str]:
        tags = self.tags if isinstance(self.tags, list) else []
        return {
            "title": self.title,
            "fulltitle": self.fulltitle or "",
            "description": self.description or "",
            "content": self.content or "",
            "brand": self.brand_title or "",
            "tags": " ".join(str(t) for t in tags),
        }


class UpstreamVariant(UpstreamItem):
    title: str | None = None
    sku: str | None = None
    ean: str | None = None
    article_code: str | None = Field(None, alias="articleCode")
    price_incl: float | None = Field(None, alias="priceIncl")
    stock_level: int | None = Field(None, alias="stockLevel")
    product_id: int | None = Field(None, alias="productId")

    @model_validator(mode="before")
    @classmethod
    def extract_product(cls, data: Any) -> Any:
        """Variants must belong to exactly one product."""
        if isinstance(data, dict):
            product_id = resource_id(data.get("productId")) or resource_id(data.get("product"))
            if product_id is None:
                raise ValueError("variant has no owning product")
            data = {**data, "productId": product_id}
        return data

    def search_fields(self) -> dict[str, str]:
        return {
            "title": self.title or "",
            "sku": self.sku or "",
            "ean": self.ean or "",
            "article_code": self.article_code or "",
        }

    def to_entity(self, tenant_id: str, entity_type: EntityType) -> "CatalogEntity":
        entity = super().to_entity(tenant_id, entity_type)
        entity.product_upstream_id = self.product_id
        return entity


class UpstreamCategory(UpstreamItem):
    title: str = ""
    fulltitle: str | None = None
    description: str | None = None
    url: str | None = None
    depth: int | None = None
    sorting: str | None = None
    parent_id: int | None = Field(None, alias="parentId")

    @model_validator(mode="before")
    @classmethod
    def extract_parent(cls, data: Any) -> Any:
        if isinstance(data, dict):
            parent = resource_id(data.get("parentId")) or resource_id(data.get("parent"))
            data = {**data, "parentId": parent}
        return data

    def search_fields(self) -> dict[str, str]:
        return {
            "title": self.title,
            "fulltitle": self.fulltitle or "",
            "description": self.description or "",
        }

    def to_entity(self, tenant_id: str, entity_type: EntityType) -> "CatalogEntity":
        entity = super().to_entity(tenant_id, entity_type)
        entity.parent_upstream_id = self.parent_id
        return entity


class UpstreamPage(UpstreamItem):
    title: str = ""
    content: str | None = None
    url: str | None = None
    visible: bool = True

    def search_fields(self) -> dict[str, str]:
        return {"title": self.title, "content": self.content or ""}


UPSTREAM_MODELS: dict[EntityType, type[UpstreamItem]] = {
    EntityType.CATEGORY: UpstreamCategory,
    EntityType.PRODUCT: UpstreamProduct,
    EntityType.VARIANT: UpstreamVariant,
    EntityType.PAGE: UpstreamPage,
}


class RejectedItem(BaseModel):
    """An item the upstream returned but that cannot be applied."""

    upstream_id: int | None = None
    reason: str


class Page(BaseModel):
    """One page of a cursor-paginated listing."""

    items: list[UpstreamItem] = Field(default_factory=list)
    rejected: list[RejectedItem] = Field(default_factory=list)
    next_cursor: str | None = None

    @property
    def done(self) -> bool:
        return self.next_cursor is None


# ---------------------------------------------------------------------------
# Engine representation
# ---------------------------------------------------------------------------

class CatalogEntity(BaseModel):
    """Tenant-scoped entity handed to the catalog store."""

    tenant_id: str
    entity_type: EntityType
    upstream_id: int
    version: datetime
    fields: dict[str, Any] = Field(default_factory=dict)
    search_source: dict[str, str] = Field(default_factory=dict)

    # Categories: raw upstream parent, resolved in the second pass
    parent_upstream_id: int | None = None
    # Variants: owning product
    product_upstream_id: int | None = None


class StoredEntity(CatalogEntity):
    """Entity as persisted by a store."""

    internal_id: int
    parent_id: int | None = None
    revision: int = 1
    search_document: dict[str, str] = Field(default_factory=dict)
    stored_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

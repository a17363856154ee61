"""
Webhook ingestion.

Turns an upstream change notification into an Incremental sync task.
The ingestor only validates and enqueues; the delivery is acknowledged
before any sync work happens, so duplicates are expected and left to the
idempotency ledger.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping

import structlog
from pydantic import TypeAdapter, ValidationError

from catalog_sync.models import EntityType, resource_id, ensure_utc
from catalog_sync.security import verify_webhook_signature
from catalog_sync.tasks import SyncMode, SyncTask, TaskQueue
from catalog_sync.tenants import TenantRegistry, UnknownTenant

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-signature"
GROUP_HEADER = "x-group"
ACTION_HEADER = "x-action"

# Item group names as the upstream sends them
ITEM_GROUPS = {
    "products": EntityType.PRODUCT,
    "variants": EntityType.VARIANT,
    "categories": EntityType.CATEGORY,
    "pages": EntityType.PAGE,
    "textpages": EntityType.PAGE,
}

_datetime = TypeAdapter(datetime)

SignatureVerifier = Callable[[bytes, str | None, str], bool]


class WebhookStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    UNKNOWN_TENANT = "unknown_tenant"
    SYNC_DISABLED = "sync_disabled"
    BAD_SIGNATURE = "bad_signature"
    MALFORMED = "malformed"
    UNKNOWN_GROUP = "unknown_group"


@dataclass
class WebhookResult:
    status: WebhookStatus
    reason: RejectReason | None = None
    detail: str = ""
    task: SyncTask | None = None
    queued: bool = False

    @property
    def accepted(self) -> bool:
        return self.status is WebhookStatus.ACCEPTED

    @classmethod
    def rejected(cls, reason: RejectReason, detail: str = "") -> "WebhookResult":
        return cls(WebhookStatus.REJECTED, reason=reason, detail=detail)


class WebhookIngestor:
    """
    Validates webhook deliveries and queues Incremental tasks.

    Usage:
        ingestor = WebhookIngestor(registry, queue, app_secret)
        result = ingestor.accept("shop-1", request_body, request_headers)
    """

    def __init__(
        self,
        registry: TenantRegistry,
        queue: TaskQueue,
        app_secret: str,
        verifier: SignatureVerifier = verify_webhook_signature,
    ):
        self.registry = registry
        self.queue = queue
        self.app_secret = app_secret
        self.verifier = verifier

    def accept(
        self,
        tenant_id: str,
        payload: bytes | Mapping[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> WebhookResult:
        """
        Accept or reject one delivery.

        Args:
            tenant_id: Tenant the delivery is addressed to
            payload: Raw request body, or an already-parsed body (signature
                is then checked against its compact JSON encoding)
            headers: Request headers, matched case-insensitively
        """
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        log = logger.bind(tenant_id=tenant_id)

        try:
            tenant = self.registry.get(tenant_id)
        except UnknownTenant:
            log.warning("Webhook for unknown tenant")
            return WebhookResult.rejected(RejectReason.UNKNOWN_TENANT)

        if not tenant.sync_enabled:
            log.info("Webhook for tenant without sync enabled")
            return WebhookResult.rejected(RejectReason.SYNC_DISABLED)

        if isinstance(payload, (bytes, bytearray)):
            body = bytes(payload)
        else:
            body = json.dumps(payload, separators=(",", ":")).encode()

        if not self.verifier(body, headers.get(SIGNATURE_HEADER), self.app_secret):
            log.warning("Webhook signature rejected")
            return WebhookResult.rejected(RejectReason.BAD_SIGNATURE)

        if isinstance(payload, (bytes, bytearray)):
            try:
                data = json.loads(body)
            except ValueError as e:
                return WebhookResult.rejected(RejectReason.MALFORMED, f"Invalid JSON: {e}")
        else:
            data = dict(payload)
        if not isinstance(data, dict):
            return WebhookResult.rejected(RejectReason.MALFORMED, "Body is not an object")

        group = data.get("itemGroup") or headers.get(GROUP_HEADER)
        if not group:
            return WebhookResult.rejected(RejectReason.MALFORMED, "No item group")
        entity_type = ITEM_GROUPS.get(str(group).lower())
        if entity_type is None:
            log.warning("Webhook for unknown item group", item_group=group)
            return WebhookResult.rejected(RejectReason.UNKNOWN_GROUP, str(group))

        action = str(data.get("itemAction") or headers.get(ACTION_HEADER) or "updated").lower()
        try:
            entity_id, version = _extract_item(data, entity_type)
        except ValueError as e:
            return WebhookResult.rejected(RejectReason.MALFORMED, str(e))

        task = SyncTask(
            tenant_id=tenant.id,
            mode=SyncMode.INCREMENTAL,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            version=version,
        )
        queued = self.queue.put(task)
        log.info(
            "Webhook accepted",
            entity_type=entity_type.value,
            entity_id=entity_id,
            action=action,
            queued=queued,
        )
        return WebhookResult(WebhookStatus.ACCEPTED, task=task, queued=queued)


def _extract_item(data: dict[str, Any], entity_type: EntityType) -> tuple[int | None, datetime | None]:
    """
    Entity id and version from a delivery body.

    Accepts the item wrapped in `payload`, keyed by its singular name
    (``{"product": {...}}``) or bare. No id means the whole group changed.
    """
    body = data.get("payload", data)
    if not isinstance(body, dict):
        raise ValueError("Payload is not an object")
    item = body.get(entity_type.singular, body)
    if not isinstance(item, dict):
        raise ValueError(f"'{entity_type.singular}' is not an object")

    raw_id = item.get("id")
    entity_id = resource_id(raw_id)
    if raw_id is not None and entity_id is None:
        raise ValueError(f"Invalid item id {raw_id!r}")

    version = None
    raw_version = item.get("updatedAt")
    if raw_version:
        try:
            version = ensure_utc(_datetime.validate_python(raw_version))
        except ValidationError as e:
            raise ValueError(f"Invalid updatedAt {raw_version!r}") from e
    return entity_id, version

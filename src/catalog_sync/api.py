"""
HTTP endpoints: webhook receiver and health.
"""

from typing import Any, Callable

from fastapi import APIRouter, FastAPI, HTTPException, Request

from catalog_sync import __version__
from catalog_sync.webhooks import RejectReason, WebhookIngestor

REJECT_STATUS = {
    RejectReason.UNKNOWN_TENANT: 404,
    RejectReason.SYNC_DISABLED: 409,
    RejectReason.BAD_SIGNATURE: 401,
    RejectReason.MALFORMED: 400,
    RejectReason.UNKNOWN_GROUP: 400,
}


def create_app(
    ingestor: WebhookIngestor,
    stats: Callable[[], dict[str, Any]] | None = None,
) -> FastAPI:
    """
    Build the app around an ingestor.

    The webhook route only validates and enqueues, so it answers well
    before the sync it triggers has run.
    """
    app = FastAPI(title="Catalog Sync Engine", version=__version__)
    router = APIRouter(tags=["webhooks"])

    @router.post("/webhooks/{tenant_id}", status_code=202)
    async def receive_webhook(tenant_id: str, request: Request):
        """Receive a change notification for one tenant."""
        body = await request.body()
        result = ingestor.accept(tenant_id, body, dict(request.headers))
        if not result.accepted:
            raise HTTPException(
                status_code=REJECT_STATUS[result.reason],
                detail={"reason": result.reason.value, "detail": result.detail},
            )
        task = result.task
        return {
            "status": "accepted",
            "queued": result.queued,
            "entity_type": task.entity_type.value,
            "entity_id": task.entity_id,
            "action": task.action,
        }

    @router.get("/health", tags=["health"])
    def health():
        payload: dict[str, Any] = {
            "status": "ok",
            "version": __version__,
            "pending_tasks": len(ingestor.queue),
        }
        if stats is not None:
            payload["stats"] = stats()
        return payload

    app.include_router(router)
    return app

"""
Admin API routes (X-Admin-Key).

- GET  /admin/ledger/summary: plan & revenue projections
- POST /admin/webhooks/replay: replay due webhook events
"""
import logging
from fastapi import APIRouter, Depends, Query

from streamvault.core.admin_auth import AdminActor, require_admin_auth
from streamvault.features.billing.retry_service import replay_due_events
from streamvault.features.ledger.service import ledger_summary

logger = logging.getLogger("streamvault")

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/ledger/summary")
def get_ledger_summary(
    window_days: int = Query(30, alias="windowDays", ge=1, le=366),
    actor: AdminActor = Depends(require_admin_auth),
):
    return ledger_summary(window_days=window_days)


@router.post("/webhooks/replay")
def replay_webhooks(
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin_auth),
):
    stats = replay_due_events(limit=limit)
    logger.info("admin.webhooks_replayed", extra={"actor_id": actor.actor_id, "claimed": stats["claimed"]})
    return stats

"""
Webhook replay engine.

Deterministic, idempotent replays of recorded webhook events that failed
or were never applied (process died after recording). Events are replayed
from their stored normalized payload; no provider calls are made.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from sqlalchemy import select, func

from streamvault.core.config import settings
from streamvault.core.database import get_db_session, webhook_events
from streamvault.core.metrics import webhook_replay_backlog
from streamvault.features.billing.reconciler import FAILED, RECEIVED, apply_recorded_event

logger = logging.getLogger("streamvault")


def find_due_events(limit: int, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Events whose next attempt is due, oldest first.

    SQLite doesn't support SKIP LOCKED; concurrent replayers may pick the
    same event, which is safe because applying is idempotent.
    """
    ts = now or datetime.now(timezone.utc)
    with get_db_session() as session:
        rows = session.execute(
            select(
                webhook_events.c.event_id,
                webhook_events.c.status,
                webhook_events.c.attempt_count,
                webhook_events.c.next_attempt_at,
            )
            .where(webhook_events.c.status.in_((FAILED, RECEIVED)))
            .where(webhook_events.c.next_attempt_at.is_not(None))
            .where(webhook_events.c.next_attempt_at <= ts)
            .where(webhook_events.c.attempt_count < settings.WEBHOOK_REPLAY_MAX_ATTEMPTS)
            .order_by(webhook_events.c.next_attempt_at.asc())
            .limit(limit)
        ).fetchall()
    return [
        {
            "event_id": r.event_id,
            "status": r.status,
            "attempt_count": int(r.attempt_count or 0),
            "next_attempt_at": r.next_attempt_at,
        }
        for r in rows
    ]


def count_backlog() -> int:
    """Events still waiting for a successful apply (including exhausted ones)."""
    with get_db_session() as session:
        return int(session.execute(
            select(func.count()).select_from(webhook_events)
            .where(webhook_events.c.status.in_((FAILED, RECEIVED)))
        ).scalar() or 0)


def replay_due_events(limit: int = 50, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Replay due events.

    Returns:
        {"claimed", "processed", "ignored", "failed", "backlog"}
    """
    ts = now or datetime.now(timezone.utc)
    stats = {"claimed": 0, "processed": 0, "ignored": 0, "failed": 0}

    for row in find_due_events(limit, now=ts):
        stats["claimed"] += 1
        outcome = apply_recorded_event(row["event_id"], now=ts)
        if outcome in stats:
            stats[outcome] += 1

    backlog = count_backlog()
    webhook_replay_backlog.set(backlog)
    stats["backlog"] = backlog
    logger.info("webhook.replay_complete", extra=stats)
    return stats

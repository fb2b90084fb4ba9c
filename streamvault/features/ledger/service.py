"""
streamvault/features/ledger/service.py

Read-only plan & revenue projections, recomputed from subscriptions and
plans on every call. The payment provider stays authoritative for money;
these figures are an operational view only.

Revenue uses each subscription's terms snapshot, so a plan price change
shows up here only as subscriptions renew onto it.
"""

from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional

from sqlalchemy import select, func, and_, or_

from streamvault.core.database import get_db_session, subscriptions, plans
from streamvault.core.errors import ValidationError
from streamvault.features.entitlements.store import as_utc, utc_now
from streamvault.models.subscription import SubscriptionState

_ENDED = (SubscriptionState.CANCELLED.value, SubscriptionState.EXPIRED.value)


def _active_clause(now: datetime):
    # ACTIVE rows whose period has lapsed count as expired even before a read expires them
    return and_(
        subscriptions.c.state == SubscriptionState.ACTIVE.value,
        or_(subscriptions.c.current_period_end.is_(None), subscriptions.c.current_period_end > now),
    )


def active_subscription_count(now: Optional[datetime] = None) -> int:
    now = as_utc(now) or utc_now()
    with get_db_session() as session:
        return int(session.execute(
            select(func.count()).select_from(subscriptions).where(_active_clause(now))
        ).scalar() or 0)


def revenue_by_plan(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Monthly-normalized recurring revenue of ACTIVE subscriptions, per plan."""
    now = as_utc(now) or utc_now()
    with get_db_session() as session:
        rows = session.execute(
            select(
                plans.c.plan_id,
                plans.c.billing_period,
                plans.c.currency,
                func.count(subscriptions.c.id).label("active"),
                func.coalesce(func.sum(subscriptions.c.price_cents), 0).label("gross_cents"),
            )
            .select_from(plans.outerjoin(subscriptions, and_(
                subscriptions.c.plan_id == plans.c.plan_id,
                _active_clause(now),
            )))
            .group_by(plans.c.plan_id, plans.c.billing_period, plans.c.currency)
            .order_by(plans.c.plan_id)
        ).fetchall()

    result = []
    for row in rows:
        gross = int(row.gross_cents or 0)
        monthly = round(gross / 12) if row.billing_period == "year" else gross
        result.append({
            "planId": row.plan_id,
            "currency": row.currency,
            "activeSubscriptions": int(row.active or 0),
            "monthlyRecurringRevenueCents": monthly,
        })
    return result


def churn(since: datetime, until: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Churn over [since, until): subscriptions that ended in the window divided
    by subscriptions live (ACTIVE or PAST_DUE) at the window start.

    End time is the row's updated_at, which reconciliation stamps with the
    provider event time.
    """
    since = as_utc(since)
    until = as_utc(until) or utc_now()
    if since is None or since >= until:
        raise ValidationError("since must be earlier than until")

    with get_db_session() as session:
        churned = session.execute(
            select(func.count()).select_from(subscriptions)
            .where(subscriptions.c.state.in_(_ENDED))
            .where(subscriptions.c.updated_at >= since)
            .where(subscriptions.c.updated_at < until)
        ).scalar() or 0

        base = session.execute(
            select(func.count()).select_from(subscriptions)
            .where(subscriptions.c.created_at < since)
            .where(subscriptions.c.state != SubscriptionState.PENDING.value)
            .where(or_(
                subscriptions.c.state.not_in(_ENDED),
                subscriptions.c.updated_at >= since,
            ))
        ).scalar() or 0

    rate = (churned / base) if base else 0.0
    return {
        "since": since,
        "until": until,
        "churned": int(churned),
        "base": int(base),
        "rate": round(rate, 4),
    }


def ledger_summary(now: Optional[datetime] = None, window_days: int = 30) -> Dict[str, Any]:
    now = as_utc(now) or utc_now()
    by_plan = revenue_by_plan(now)
    return {
        "generatedAt": now,
        "activeSubscriptions": active_subscription_count(now),
        "monthlyRecurringRevenueCents": sum(p["monthlyRecurringRevenueCents"] for p in by_plan),
        "revenueByPlan": by_plan,
        "churn": churn(now - timedelta(days=window_days), now),
    }

"""
streamvault/features/plans/service.py

Plan catalog service.

Handles:
- Plan seeding (basic, standard, premium)
- Plan lookup by id and by provider price
- Forward-only term changes (existing subscriptions keep their snapshot
  until their next renewal)
"""

from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from sqlalchemy import select, insert, update

from streamvault.core.config import settings
from streamvault.core.database import get_db_session, plans, subscriptions
from streamvault.core.errors import ValidationError, NotFoundError, ConflictError
from streamvault.models.plan import Plan
from streamvault.models.subscription import LIVE_STATES


# Default plan configurations
DEFAULT_PLANS: Dict[str, Dict[str, Any]] = {
    "basic": {
        "name": "Basic",
        "price_cents": 799,
        "device_limit": 2,
        "offline_allowed": False,
        "max_offline_downloads": 0,
    },
    "standard": {
        "name": "Standard",
        "price_cents": 1299,
        "device_limit": 4,
        "offline_allowed": True,
        "max_offline_downloads": 2,
    },
    "premium": {
        "name": "Premium",
        "price_cents": 1899,
        "device_limit": 6,
        "offline_allowed": True,
        "max_offline_downloads": 25,
    },
}

_IDENTITY_FIELDS = ("name", "currency", "billing_period")


def _row_to_plan(row) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        name=row.name,
        price_cents=row.price_cents,
        currency=row.currency,
        billing_period=row.billing_period,
        device_limit=row.device_limit,
        offline_allowed=bool(row.offline_allowed),
        max_offline_downloads=row.max_offline_downloads,
        external_price_id=row.external_price_id,
        created_at=row.created_at,
    )


def seed_plans() -> None:
    """
    Seed default plans into database (idempotent).

    Provider price ids are read from settings; an existing plan without a
    price id picks one up once it is configured.
    """
    now = datetime.now(timezone.utc)
    price_ids = settings.plan_price_ids()

    with get_db_session() as session:
        for plan_id, config in DEFAULT_PLANS.items():
            price_id = price_ids.get(plan_id)
            existing = session.execute(
                select(plans).where(plans.c.plan_id == plan_id)
            ).first()

            if not existing:
                session.execute(
                    insert(plans).values(
                        plan_id=plan_id,
                        name=config["name"],
                        price_cents=config["price_cents"],
                        currency="usd",
                        billing_period="month",
                        device_limit=config["device_limit"],
                        offline_allowed=config["offline_allowed"],
                        max_offline_downloads=config["max_offline_downloads"],
                        external_price_id=price_id,
                        created_at=now,
                        updated_at=now,
                    )
                )
            elif price_id and not existing.external_price_id:
                session.execute(
                    update(plans)
                    .where(plans.c.plan_id == plan_id)
                    .values(external_price_id=price_id, updated_at=now)
                )


def get_plan(plan_id: str, session=None) -> Optional[Plan]:
    """Get plan by ID."""
    if session is not None:
        row = session.execute(select(plans).where(plans.c.plan_id == plan_id)).first()
        return _row_to_plan(row) if row else None

    with get_db_session() as session:
        row = session.execute(select(plans).where(plans.c.plan_id == plan_id)).first()
        return _row_to_plan(row) if row else None


def get_plan_by_price(price_id: str, session=None) -> Optional[Plan]:
    """Resolve a provider price id to its plan."""
    if not price_id:
        return None
    stmt = select(plans).where(plans.c.external_price_id == price_id)
    if session is not None:
        row = session.execute(stmt).first()
        return _row_to_plan(row) if row else None

    with get_db_session() as session:
        row = session.execute(stmt).first()
        return _row_to_plan(row) if row else None


def require_plan(plan_id: str, session=None) -> Plan:
    """
    Get plan by ID or fail.

    Raises:
        ValidationError: unknown plan
    """
    plan = get_plan(plan_id, session=session) if plan_id else None
    if plan is None:
        raise ValidationError(f"Unknown plan: {plan_id}")
    return plan


def list_plans() -> List[Plan]:
    """All plans, cheapest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(plans).order_by(plans.c.price_cents, plans.c.plan_id)
        ).fetchall()
        return [_row_to_plan(row) for row in rows]


def update_plan_terms(
    plan_id: str,
    price_cents: Optional[int] = None,
    device_limit: Optional[int] = None,
    max_offline_downloads: Optional[int] = None,
    offline_allowed: Optional[bool] = None,
    **identity_changes,
) -> Plan:
    """
    Change a plan's price or limits going forward.

    Subscriptions already running keep the terms they were snapshotted with;
    the new terms reach them when their next renewal is reconciled.

    Raises:
        NotFoundError: unknown plan
        ValidationError: negative price or limit
        ConflictError: identity change (name, currency, billing_period) on a
            plan referenced by a live subscription
    """
    for field_name, value in (
        ("price_cents", price_cents),
        ("device_limit", device_limit),
        ("max_offline_downloads", max_offline_downloads),
    ):
        if value is not None and value < 0:
            raise ValidationError(f"{field_name} must be >= 0")

    unknown = set(identity_changes) - set(_IDENTITY_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown plan fields: {', '.join(sorted(unknown))}")

    values: Dict[str, Any] = {}
    if price_cents is not None:
        values["price_cents"] = price_cents
    if device_limit is not None:
        values["device_limit"] = device_limit
    if max_offline_downloads is not None:
        values["max_offline_downloads"] = max_offline_downloads
    if offline_allowed is not None:
        values["offline_allowed"] = offline_allowed

    with get_db_session() as session:
        existing = session.execute(select(plans).where(plans.c.plan_id == plan_id)).first()
        if not existing:
            raise NotFoundError(f"Plan {plan_id} not found")

        changed_identity = {
            key: value for key, value in identity_changes.items()
            if value is not None and getattr(existing, key) != value
        }
        if changed_identity:
            referenced = session.execute(
                select(subscriptions.c.id)
                .where(subscriptions.c.plan_id == plan_id)
                .where(subscriptions.c.state.in_(LIVE_STATES))
                .limit(1)
            ).first()
            if referenced:
                raise ConflictError(
                    f"Plan {plan_id} is referenced by a live subscription; "
                    f"cannot change {', '.join(sorted(changed_identity))}"
                )
            values.update(changed_identity)

        if values:
            values["updated_at"] = datetime.now(timezone.utc)
            session.execute(update(plans).where(plans.c.plan_id == plan_id).values(**values))

        row = session.execute(select(plans).where(plans.c.plan_id == plan_id)).first()
        return _row_to_plan(row)

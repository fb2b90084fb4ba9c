"""
Subscription API routes.

- POST /subscriptions/checkout-session: hosted checkout for a signed-in user
- GET  /subscriptions/me: caller's subscription status
- GET  /subscriptions/plans: plan catalog
"""
from fastapi import APIRouter, Depends

from streamvault.api.schemas import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PlanListResponse,
    PlanResponse,
    SubscriptionMeResponse,
)
from streamvault.core.auth import get_current_user_id
from streamvault.features.billing.service import get_subscription_status, start_checkout
from streamvault.features.plans.service import list_plans


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(request: CheckoutSessionRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create a hosted checkout session.

    Errors:
        400: unknown plan
        401: not signed in
        409: already subscribed
        503: provider unavailable
    """
    url = start_checkout(
        user_id=user_id,
        plan_id=request.plan_id,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    return CheckoutSessionResponse(checkout_url=url)


@router.get("/me", response_model=SubscriptionMeResponse)
def subscription_me(user_id: str = Depends(get_current_user_id)):
    status = get_subscription_status(user_id)
    return SubscriptionMeResponse(
        is_subscribed=status["isSubscribed"],
        plan_id=status["planId"],
        current_period_end=status["currentPeriodEnd"],
        state=status["state"],
        created_at=status["createdAt"],
    )


@router.get("/plans", response_model=PlanListResponse)
def plans_catalog():
    return PlanListResponse(plans=[
        PlanResponse(
            plan_id=plan.plan_id,
            name=plan.name,
            price_cents=plan.price_cents,
            currency=plan.currency,
            billing_period=plan.billing_period,
            device_limit=plan.device_limit,
            offline_allowed=plan.offline_allowed,
            max_offline_downloads=plan.max_offline_downloads,
        )
        for plan in list_plans()
    ])

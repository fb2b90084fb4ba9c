"""
Auth API routes.

- POST /auth/signup-subscription/intent: phase 1 of signup (provider objects)
- POST /auth/signup-subscription/finalize: phase 2 (account + subscription)
- POST /auth/login: password login
- POST /auth/refresh: rotate refresh token
"""
from typing import Optional
from fastapi import APIRouter, Header

from streamvault.api.schemas import (
    FinalizeRequest,
    LoginRequest,
    RefreshRequest,
    SignupIntentRequest,
    SignupIntentResponse,
    TokensResponse,
)
from streamvault.features.signup.service import create_signup_intent, finalize_signup
from streamvault.features.users.service import login, rotate_refresh_token


router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/signup-subscription/intent", response_model=SignupIntentResponse)
def signup_intent(
    request: SignupIntentRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    """
    Create the provider customer + incomplete subscription for a new signup.

    The idempotency key may come from the body or the Idempotency-Key header
    (body wins). Repeating the call with the same key returns the same result.

    Errors:
        400: invalid input or key reused with different parameters
        409: duplicate subscription, email registered, intent in progress
        503: provider unavailable
    """
    intent = create_signup_intent(
        email=request.email,
        name=request.name,
        plan_id=request.plan_id,
        payment_method_id=request.payment_method_id,
        idempotency_key=request.idempotency_key or idempotency_key,
    )
    return SignupIntentResponse(
        subscription_id=intent.subscription_id,
        customer_id=intent.customer_id,
        confirmation_token=intent.confirmation_token,
    )


@router.post("/signup-subscription/finalize", response_model=TokensResponse)
def signup_finalize(request: FinalizeRequest):
    """
    Commit the account once the client has confirmed payment.

    Errors:
        400: invalid input
        409: payment not confirmed (retryable), email already registered
        503: provider unavailable
    """
    tokens = finalize_signup(
        email=request.email,
        password=request.password,
        name=request.name,
        plan_id=request.plan_id,
        subscription_id=request.subscription_id,
        customer_id=request.customer_id,
    )
    return TokensResponse(**tokens.model_dump())


@router.post("/login", response_model=TokensResponse)
def login_route(request: LoginRequest):
    tokens = login(request.email, request.password)
    return TokensResponse(**tokens.model_dump())


@router.post("/refresh", response_model=TokensResponse)
def refresh_route(request: RefreshRequest):
    tokens = rotate_refresh_token(request.refresh_token)
    return TokensResponse(**tokens.model_dump())

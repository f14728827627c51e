"""
Stripe billing API routes.

- POST /api/stripe/create-checkout-session: start a subscription checkout
- GET  /api/stripe/verify-session: confirm a finished checkout
- GET  /api/stripe/subscription: local tier/status + live Stripe details
- POST /api/stripe/cancel-subscription: cancel at period end
- POST /api/stripe/webhook: Stripe events (signature verified, idempotent)

Billing-disabled (no STRIPE_SECRET_KEY) surfaces as 503 from the adapter.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel

from gobbledata.core.auth import AuthenticatedUser, get_current_user, get_current_user_id
from gobbledata.dependencies import get_billing_adapter
from gobbledata.features.billing.service import BillingSyncAdapter


router = APIRouter(prefix="/stripe", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    priceId: str
    successUrl: Optional[str] = None
    cancelUrl: Optional[str] = None


class CheckoutResponse(BaseModel):
    checkoutUrl: str
    sessionId: str


@router.post("/create-checkout-session", response_model=CheckoutResponse)
def create_checkout_session(
    body: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    billing: BillingSyncAdapter = Depends(get_billing_adapter),
):
    """
    Errors:
        400: priceId not in the configured allow-list
        503: Billing disabled
        502: Stripe API error
    """
    started = billing.start_checkout(
        user_id=user.id,
        email=user.email,
        price_id=body.priceId,
        success_url=body.successUrl,
        cancel_url=body.cancelUrl,
    )
    return {"checkoutUrl": started.checkout_url, "sessionId": started.session_id}


@router.get("/verify-session")
def verify_session(
    session_id: str = Query(...),
    user: AuthenticatedUser = Depends(get_current_user),
    billing: BillingSyncAdapter = Depends(get_billing_adapter),
):
    """
    Errors:
        403: session belongs to another user
        400: session has no subscription
    """
    summary = billing.sync_from_checkout_session(session_id, user.id)
    return {
        "customerEmail": summary.customer_email or user.email,
        "planName": summary.plan_name,
        "amount": summary.amount,
        "trialEnd": summary.trial_end,
        "nextBillingDate": summary.next_billing_date,
        "status": summary.status,
    }


@router.get("/subscription")
def get_subscription(
    user_id: str = Depends(get_current_user_id),
    billing: BillingSyncAdapter = Depends(get_billing_adapter),
):
    view = billing.get_subscription_status(user_id).as_dict()
    return {
        "success": True,
        "tier": view["tier"],
        "status": view["status"],
        "stripeDetails": view["stripe_details"],
    }


@router.post("/cancel-subscription")
def cancel_subscription(
    user_id: str = Depends(get_current_user_id),
    billing: BillingSyncAdapter = Depends(get_billing_adapter),
):
    details = billing.cancel_subscription(user_id)
    return {
        "success": True,
        "message": "Subscription will cancel at period end",
        "cancels_at": details.current_period_end.isoformat() if details.current_period_end else None,
    }


@router.post("/webhook")
async def handle_webhook(request: Request, billing: BillingSyncAdapter = Depends(get_billing_adapter)):
    """
    Raw body is required for signature verification.

    Errors:
        400: invalid signature or payload
        503: billing disabled
    """
    body = await request.body()
    return await run_in_threadpool(billing.process_webhook, dict(request.headers), body)

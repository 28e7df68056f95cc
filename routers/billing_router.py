"""
Billing Router - checkout, portal, invoice and Stripe webhook endpoints
Webhook is defined FIRST and takes no API key; Stripe authenticates by signature
"""

import logging
from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_api_key
from config.settings import settings
from crud.user import UserRepository
from database import get_db
from models.subscription import CheckoutRequest, CheckoutResponse, EmailRequest
from services.billing_service import BillingService
from services.reconciler import SubscriptionReconciler
from services.stripe_gateway import StripeGateway, get_stripe_gateway
from services.webhook_service import WebhookIngress

logger = logging.getLogger(__name__)

billing_router = APIRouter(tags=["billing"])


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST
@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    """
    Handle Stripe webhook events with signature verification.

    - bad or missing signature: 400, Stripe does not retry
    - unknown event type: 200, dropped
    - handler failure: 5xx, Stripe redelivers later
    """
    # Raw body is required for signature verification
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    ingress = WebhookIngress(
        gateway,
        SubscriptionReconciler(UserRepository(db), gateway),
        settings.stripe_webhook_secret,
    )
    result = await ingress.process(payload, signature)

    logger.info(f"Webhook {result.event_id} ({result.event_type}) {result.state.value}")
    return JSONResponse(status_code=200, content={"received": True})


@billing_router.post("/create-checkout-session", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    _: str = Depends(require_api_key),
):
    """
    Create (or reuse) a deferred-invoice subscription for an email.
    Accepts ``plan_tier`` or the legacy ``plan`` field.
    """
    service = BillingService(UserRepository(db), gateway, settings)
    return await service.create_or_reuse_subscription(body.email, body.plan_tier or body.plan)


@billing_router.post("/create-portal-session")
async def create_portal_session(
    body: EmailRequest,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    _: str = Depends(require_api_key),
):
    """Create a Stripe Billing Portal session for an existing customer."""
    service = BillingService(UserRepository(db), gateway, settings)
    portal_url = await service.create_portal_session(body.email)
    return {"portal_url": portal_url}


@billing_router.post("/resend-invoice")
async def resend_invoice(
    body: EmailRequest,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    _: str = Depends(require_api_key),
):
    """Re-send the newest open invoice for an email."""
    service = BillingService(UserRepository(db), gateway, settings)
    return await service.resend_invoice(body.email)

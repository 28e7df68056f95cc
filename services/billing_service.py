"""
Billing Service - checkout, billing portal and invoice operations.
Finds or creates the Stripe customer and subscription for an email and
keeps the user record in step with what Stripe reports.
"""

import logging
import re
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from config.settings import Settings
from crud.user import UserRepository
from models.subscription import ACCESS_GRANTING_STATUSES, CheckoutResponse
from services.reconciler import resolve_strict_status
from services.status_mapping import normalize_plan, normalize_stripe_status
from services.stripe_gateway import CustomerInfo, StripeGateway
from utils.errors import ConfigurationError, NotFoundError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

CUSTOMER_SOURCE = "gpt_paywall"

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


def validate_email(email: Optional[str]) -> str:
    """Validate email format and return it trimmed."""
    if not email or not email.strip():
        raise ValidationError("Email is required")
    email = email.strip()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email format")
    return email


def isoformat(value) -> Optional[str]:
    return value.isoformat() if value else None


class BillingService:
    """
    Service class for handling billing-related business logic.
    Works with email addresses and Stripe customer IDs directly.
    """

    def __init__(self, user_repo: UserRepository, gateway: StripeGateway, settings: Settings):
        """
        Initialize the billing service.

        Args:
            user_repo: Repository over the users table
            gateway: Stripe gateway
            settings: Application settings (price, trial and due-date policy)
        """
        self.user_repo = user_repo
        self.gateway = gateway
        self.settings = settings

    def _price_id(self) -> str:
        if not self.settings.stripe_price_id:
            logger.error("STRIPE_PRICE_ID is not set. Cannot create subscription.")
            raise ConfigurationError("STRIPE_PRICE_ID is not configured")
        return self.settings.stripe_price_id

    async def create_or_reuse_subscription(self, email: Optional[str], plan_tier: Optional[str] = None) -> CheckoutResponse:
        """
        Create a deferred-invoice subscription for ``email``, or reuse the
        customer's existing active/trialing one.

        Args:
            email: Customer email
            plan_tier: Requested plan tier (defaults to pro)

        Returns:
            CheckoutResponse describing the subscription
        """
        email = validate_email(email)
        plan = normalize_plan(plan_tier or "pro")

        try:
            user, created = await self.user_repo.get_or_create_user(email)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load user record for {email}: {e}", exc_info=True)
            raise UpstreamError("Failed to load user record") from e
        if created:
            logger.info(f"Created user record during checkout: {user.email}")

        customer = self._resolve_customer(email, user.stripe_customer_id)

        subscription = next(
            (s for s in self.gateway.list_subscriptions(customer.id, limit=10)
             if s.status in ("active", "trialing")),
            None,
        )
        subscription_created = False
        if subscription is not None:
            logger.info(f"Reusing subscription {subscription.id} for {email}")
        else:
            subscription = self.gateway.create_subscription(
                customer.id,
                price_id=self._price_id(),
                trial_period_days=self.settings.stripe_trial_period_days,
                days_until_due=self.settings.days_until_due(),
                metadata={"email": email, "plan": plan, "source": CUSTOMER_SOURCE},
            )
            subscription_created = True
            logger.info(f"Created subscription {subscription.id} for {email}")

        status = resolve_strict_status(
            self.gateway,
            subscription.status,
            subscription.collection_method,
            subscription.id,
            subscription.latest_invoice_id,
        )

        updates = {"stripe_customer_id": customer.id}
        # Status and period end always describe the referenced subscription;
        # a stored reference is only replaced by a live one
        if (
            not user.subscription_id
            or user.subscription_id == subscription.id
            or normalize_stripe_status(subscription.status) in ACCESS_GRANTING_STATUSES
        ):
            updates.update({
                "subscription_id": subscription.id,
                "status": status.value,
                "plan": plan,
                "current_period_end": subscription.current_period_end,
            })
        else:
            logger.info(
                f"Keeping stored subscription {user.subscription_id} for {email}; "
                f"{subscription.id} is {subscription.status}"
            )

        try:
            await self.user_repo.update_user(user, updates)
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist checkout for {email}: {e}", exc_info=True)
            raise UpstreamError("Failed to persist subscription state") from e

        return CheckoutResponse(
            subscription_id=subscription.id,
            status=subscription.status,
            internal_status=status.value,
            subscription_created=subscription_created,
            collection_method=subscription.collection_method,
            trial_end=isoformat(subscription.trial_end),
            current_period_end=isoformat(subscription.current_period_end),
            customer_id=customer.id,
        )

    def _resolve_customer(self, email: str, stored_customer_id: Optional[str]) -> CustomerInfo:
        """
        Stored customer id first, then lookup by email, then create.
        A stale stored id (deleted upstream) falls through to the email lookup.
        """
        if stored_customer_id:
            try:
                customer = self.gateway.retrieve_customer(stored_customer_id)
                if not customer.deleted:
                    return customer
                logger.warning(f"Stored Stripe customer {stored_customer_id} was deleted, looking up by email")
            except (NotFoundError, UpstreamError) as e:
                logger.warning(f"Stored Stripe customer not found, recreating: {e.message}")

        customer = self.gateway.find_customer_by_email(email)
        if customer is not None:
            return customer
        return self.gateway.create_customer(email, metadata={"source": CUSTOMER_SOURCE})

    async def create_portal_session(self, email: Optional[str]) -> str:
        """
        Create a Stripe Billing Portal session for the customer with ``email``.

        Returns:
            Portal URL
        """
        email = validate_email(email)
        customer = self.gateway.find_customer_by_email(email)
        if customer is None:
            raise NotFoundError("No subscription found for this email")
        return self.gateway.create_portal_session(customer.id, self.settings.return_url)

    async def resend_invoice(self, email: Optional[str]) -> dict:
        """Re-send the customer's newest open invoice."""
        email = validate_email(email)

        try:
            user = await self.user_repo.get_user_by_email(email)
        except SQLAlchemyError as e:
            raise UpstreamError("Failed to read user record") from e

        customer_id = user.stripe_customer_id if user else None
        if not customer_id:
            customer = self.gateway.find_customer_by_email(email)
            if customer is None:
                raise NotFoundError("No customer found for this email")
            customer_id = customer.id

        invoice = self.gateway.latest_open_invoice(customer_id)
        if invoice is None:
            raise NotFoundError("No open invoice found for this email")

        sent = self.gateway.send_invoice(invoice.id)
        logger.info(f"Re-sent invoice {sent.id} to {email}")
        return {
            "invoice_id": sent.id,
            "status": sent.status,
            "hosted_invoice_url": sent.hosted_invoice_url,
        }

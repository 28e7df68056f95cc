"""
Subscription Reconciler - merges Stripe events into stored user records.

Each handler does its Stripe reads first, computes the new fields, then
issues exactly one write. Any failure before the write aborts the handler
with nothing persisted, so a redelivered event starts from clean state.
"""

import logging
from typing import Callable, Optional
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from crud.user import UserRepository
from database_models import User, utcnow
from models.subscription import (
    ACCESS_GRANTING_STATUSES,
    DEFERRED_INVOICE,
    CheckoutCompleted,
    InvoicePaid,
    ReconcileEvent,
    SubscriptionChanged,
    SubscriptionStatus,
)
from services.status_mapping import normalize_stripe_status
from services.stripe_gateway import StripeGateway, SubscriptionInfo
from utils.errors import NotFoundError, UpstreamError

logger = logging.getLogger(__name__)


def resolve_strict_status(
    gateway: StripeGateway,
    raw_status: Optional[str],
    collection_mode: Optional[str],
    subscription_ref: Optional[str],
    latest_invoice_ref: Optional[str] = None,
) -> SubscriptionStatus:
    """
    Normalize a Stripe status, holding back "active" under deferred-invoice
    collection until the subscription's invoice is actually paid.

    Stripe marks a send_invoice subscription active before the invoice is
    settled. If the invoice cannot be checked (lookup failure, or no
    invoice exists yet) this fails closed to AWAITING_PAYMENT; a later
    invoice.paid event promotes the record to ACTIVE.
    """
    status = normalize_stripe_status(raw_status)
    if status is not SubscriptionStatus.ACTIVE or collection_mode != DEFERRED_INVOICE:
        return status

    try:
        if latest_invoice_ref:
            invoice = gateway.retrieve_invoice(latest_invoice_ref)
        elif subscription_ref:
            invoice = gateway.latest_invoice_for_subscription(subscription_ref)
        else:
            invoice = None
    except (UpstreamError, NotFoundError) as e:
        logger.warning(
            f"Invoice check failed for subscription {subscription_ref}: {e.message}. "
            f"Failing closed to {SubscriptionStatus.AWAITING_PAYMENT.value}."
        )
        return SubscriptionStatus.AWAITING_PAYMENT

    if invoice is None:
        logger.warning(f"No invoice found for deferred subscription {subscription_ref}; awaiting payment")
        return SubscriptionStatus.AWAITING_PAYMENT

    if invoice.status == "paid":
        return SubscriptionStatus.ACTIVE

    logger.info(
        f"Subscription {subscription_ref} is active in Stripe but invoice {invoice.id} "
        f"is {invoice.status}; holding access until paid"
    )
    return SubscriptionStatus.AWAITING_PAYMENT


class SubscriptionReconciler:
    """
    State machine over User.status driven by four Stripe event kinds.

    Handlers are safe to re-run with an identical event: they recompute the
    same fields from the same upstream state and rewrite them.
    """

    def __init__(
        self,
        user_repo: UserRepository,
        gateway: StripeGateway,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.user_repo = user_repo
        self.gateway = gateway
        self.clock = clock

    async def apply(self, event: ReconcileEvent) -> Optional[User]:
        """Dispatch an event to its handler. Returns the written record, if any."""
        if isinstance(event, CheckoutCompleted):
            return await self.handle_checkout_completed(event)
        if isinstance(event, SubscriptionChanged):
            # SubscriptionDeleted shares this path; Stripe reports it as canceled
            return await self.handle_subscription_changed(event)
        if isinstance(event, InvoicePaid):
            return await self.handle_invoice_paid(event)
        raise TypeError(f"Unsupported reconcile event: {type(event).__name__}")

    async def handle_checkout_completed(self, event: CheckoutCompleted) -> Optional[User]:
        """Checkout completion is an unconditional access grant."""
        if not event.subscription_ref:
            logger.info(f"Checkout for customer {event.customer_ref} has no subscription; ignoring")
            return None

        email = await self._resolve_email(event.customer_ref)
        if email is None:
            return None

        subscription = self._retrieve_subscription(event.subscription_ref)
        if subscription is None:
            return None
        fields = {
            "status": SubscriptionStatus.ACTIVE.value,
            "subscription_id": event.subscription_ref,
            "stripe_customer_id": event.customer_ref,
            "current_period_end": subscription.current_period_end,
        }
        return await self._write(email, event.subscription_ref, fields, normalize_stripe_status(subscription.status))

    async def handle_subscription_changed(self, event: SubscriptionChanged) -> Optional[User]:
        email = await self._resolve_email(event.customer_ref)
        if email is None:
            return None

        status = resolve_strict_status(
            self.gateway,
            event.raw_status,
            event.collection_mode,
            event.subscription_ref,
            event.latest_invoice_ref,
        )
        fields = {
            "status": status.value,
            "subscription_id": event.subscription_ref,
            "stripe_customer_id": event.customer_ref,
            "current_period_end": event.current_period_end,
        }
        return await self._write(email, event.subscription_ref, fields, status)

    async def handle_invoice_paid(self, event: InvoicePaid) -> Optional[User]:
        """Payment landed: ACTIVE regardless of any earlier awaiting_payment."""
        if not event.subscription_ref:
            logger.info(f"Invoice {event.invoice_ref} has no subscription; ignoring")
            return None

        email = await self._resolve_email(event.customer_ref)
        if email is None:
            return None

        subscription = self._retrieve_subscription(event.subscription_ref)
        if subscription is None:
            return None
        fields = {
            "status": SubscriptionStatus.ACTIVE.value,
            "subscription_id": event.subscription_ref,
            "stripe_customer_id": event.customer_ref,
            "current_period_end": subscription.current_period_end,
        }
        return await self._write(email, event.subscription_ref, fields, normalize_stripe_status(subscription.status))

    async def _resolve_email(self, customer_ref: str) -> Optional[str]:
        """
        Resolve the affected user's email from the Stripe customer object,
        never from fields in the event payload.
        """
        try:
            customer = self.gateway.retrieve_customer(customer_ref)
        except NotFoundError:
            logger.warning(f"Stripe customer {customer_ref} no longer exists; skipping event")
            return None

        if customer.deleted:
            logger.warning(f"Stripe customer {customer_ref} is deleted; skipping event")
            return None
        if customer.email:
            return customer.email

        # Customers created outside checkout may lack an email; fall back to the stored reference
        user = await self._read(self.user_repo.get_user_by_customer_id(customer_ref))
        if user is None:
            logger.warning(f"Stripe customer {customer_ref} has no email and no stored record; skipping event")
            return None
        return user.email

    def _retrieve_subscription(self, subscription_ref: str) -> Optional[SubscriptionInfo]:
        try:
            return self.gateway.retrieve_subscription(subscription_ref)
        except NotFoundError:
            logger.warning(f"Stripe subscription {subscription_ref} no longer exists; skipping event")
            return None

    async def _write(
        self,
        email: str,
        subscription_ref: str,
        fields: dict,
        upstream_status: SubscriptionStatus,
    ) -> Optional[User]:
        """
        Persist ``fields`` for ``email``.

        When the event concerns a subscription other than the stored one,
        ``upstream_status`` (what Stripe currently says about that
        subscription) decides: only a live subscription replaces the stored
        reference, anything else is skipped as superseded.
        """
        user = await self._read(self.user_repo.get_user_by_email(email))

        if user is not None and user.subscription_id and user.subscription_id != subscription_ref:
            if upstream_status not in ACCESS_GRANTING_STATUSES:
                logger.info(
                    f"Ignoring event for superseded subscription {subscription_ref} "
                    f"({upstream_status.value}, current: {user.subscription_id}) on {user.email}"
                )
                return user
            logger.info(f"Subscription for {user.email} replaced: {user.subscription_id} -> {subscription_ref}")

        fields = dict(fields, updated_at=self.clock())
        try:
            if user is None:
                user = await self.user_repo.create_user(email, **fields)
            else:
                user = await self.user_repo.update_user(user, fields)
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist reconciliation for {email}: {e}", exc_info=True)
            raise UpstreamError("Failed to persist subscription state") from e

        logger.info(f"Reconciled {user.email}: status={user.status} period_end={user.current_period_end}")
        return user

    async def _read(self, query):
        try:
            return await query
        except SQLAlchemyError as e:
            logger.error(f"User lookup failed: {e}", exc_info=True)
            raise UpstreamError("Failed to read user record") from e

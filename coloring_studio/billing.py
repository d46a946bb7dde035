"""Stripe integration and the billing event reconciler.

``StripeGateway`` is the only place that talks to Stripe. ``BillingReconciler``
turns verified webhook events into account transitions. Every transition
writes absolute values, so redelivered events are harmless; subscription
lifecycle events additionally carry the processor's ``created`` timestamp and
are dropped when the account has already seen a newer one.
"""
from datetime import datetime, timezone
import json
import logging

import stripe

from .errors import InvalidSignature
from .ledger import DuplicateKeyError
from .models import utcnow

logger = logging.getLogger(__name__)

# Outcomes reported by BillingReconciler.handle
APPLIED = "applied"
IGNORED = "ignored"
SKIPPED = "skipped"


def _from_timestamp(value):
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _first_item(subscription):
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_price_id(subscription):
    return (_first_item(subscription).get("price") or {}).get("id")


def subscription_period(subscription):
    """Billing period bounds; newer API versions carry them on the subscription item."""
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return _from_timestamp(start), _from_timestamp(end)


def invoice_subscription_id(invoice):
    subscription = invoice.get("subscription")
    if not subscription:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    return subscription


# --- Stripe helpers ---
class StripeGateway:
    """Stripe customers, checkout sessions and webhook signature checks."""

    def __init__(self, api_key, webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def create_customer(self, email, name=None):
        customer = stripe.Customer.create(api_key=self.api_key, email=email, name=name or None)
        return customer.id

    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url, trial_days=7):
        session = stripe.checkout.Session.create(
            api_key=self.api_key,
            mode="subscription",
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            subscription_data={"trial_period_days": trial_days},
        )
        return session.id, session.url

    def verify_event(self, payload, sig_header):
        """Check the signature over the raw body and return the event as a dict."""
        if not sig_header:
            raise InvalidSignature("No signature provided")
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning("Rejected webhook with undecodable body")
                raise InvalidSignature("Invalid payload")
        try:
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning("Rejected webhook with bad signature: %s", e)
            raise InvalidSignature()
        try:
            event = json.loads(payload)
        except ValueError:
            raise InvalidSignature("Invalid payload")
        if not isinstance(event, dict) or "type" not in event:
            raise InvalidSignature("Invalid payload")
        return event


class BillingReconciler:
    def __init__(self, ledger, plans, clock=utcnow):
        self.ledger = ledger
        self.plans = plans
        self.clock = clock
        self._handlers = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_created,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._payment_succeeded,
            "invoice.payment_failed": self._payment_failed,
        }

    def handle(self, event):
        """Apply one verified event; returns ``applied``, ``skipped`` or ``ignored``."""
        event_type = event.get("type")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled event type: %s", event_type)
            return IGNORED
        obj = (event.get("data") or {}).get("object") or {}
        event_at = _from_timestamp(event.get("created")) or self.clock()
        logger.info("Stripe webhook event %s (%s)", event_type, event.get("id"))
        try:
            return handler(obj, event_at)
        except DuplicateKeyError as e:
            logger.error("Event %s conflicts with another account: %s", event.get("id"), e)
            return SKIPPED

    def _checkout_completed(self, session, event_at):
        if not session.get("customer") or not session.get("subscription"):
            logger.error("Missing customer or subscription in checkout session %s", session.get("id"))
        # The subscription itself is applied by customer.subscription.created
        return IGNORED

    def _resolve_plan(self, subscription):
        price_id = subscription_price_id(subscription)
        plan = self.plans.for_price_id(price_id)
        if plan is None:
            logger.error("Unknown price ID %s on subscription %s", price_id, subscription.get("id"))
        return plan

    def _subscription_created(self, subscription, event_at):
        plan = self._resolve_plan(subscription)
        if plan is None:
            return SKIPPED
        customer_id = subscription.get("customer")
        account = self.ledger.get_by_customer_id(customer_id)
        if account is None:
            logger.error("Account not found for customer %s", customer_id)
            return SKIPPED
        status = subscription.get("status")
        period_start, period_end = subscription_period(subscription)
        updated = self.ledger.apply_subscription_change(
            account.id,
            event_at,
            subscription_id=subscription.get("id"),
            subscription_plan=plan.key,
            subscription_status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            credits_remaining=plan.credits,
            is_trial_active=status == "trialing",
        )
        if updated is None:
            logger.warning("Ignored stale subscription.created for account %s", account.id)
            return SKIPPED
        logger.info("Updated account %s with %s subscription", account.id, plan.key)
        return APPLIED

    def _subscription_updated(self, subscription, event_at):
        account = self.ledger.get_by_subscription_id(subscription.get("id"))
        if account is None:
            logger.error("Account not found for subscription %s", subscription.get("id"))
            return SKIPPED
        plan = self._resolve_plan(subscription)
        if plan is None:
            return SKIPPED
        status = subscription.get("status")
        period_start, period_end = subscription_period(subscription)
        updated = self.ledger.apply_subscription_change(
            account.id,
            event_at,
            subscription_plan=plan.key,
            subscription_status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            is_trial_active=status == "trialing",
        )
        if updated is None:
            logger.warning("Ignored stale subscription.updated for account %s", account.id)
            return SKIPPED
        logger.info("Updated subscription for account %s", account.id)
        return APPLIED

    def _subscription_deleted(self, subscription, event_at):
        account = self.ledger.get_by_subscription_id(subscription.get("id"))
        if account is None:
            logger.error("Account not found for subscription %s", subscription.get("id"))
            return SKIPPED
        updated = self.ledger.apply_subscription_change(
            account.id,
            event_at,
            subscription_id=None,
            subscription_plan=None,
            subscription_status="cancelled",
            credits_remaining=0,
            is_trial_active=False,
        )
        if updated is None:
            logger.warning("Ignored stale subscription.deleted for account %s", account.id)
            return SKIPPED
        logger.info("Cancelled subscription for account %s", account.id)
        return APPLIED

    def _invoice_account(self, invoice):
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            # Not a subscription payment
            return None
        account = self.ledger.get_by_subscription_id(subscription_id)
        if account is None:
            logger.error("Account not found for subscription %s", subscription_id)
        return account

    def _payment_succeeded(self, invoice, event_at):
        account = self._invoice_account(invoice)
        if account is None:
            return SKIPPED
        plan = self.plans.get(account.subscription_plan)
        if plan is None:
            logger.error("Account %s has no known plan (%s); credits not reset", account.id, account.subscription_plan)
            return SKIPPED
        updated = self.ledger.update_subscribed(
            account.id,
            account.subscription_id,
            credits_remaining=plan.credits,
            subscription_status="active",
            last_credit_reset=self.clock(),
        )
        if updated is None:
            logger.warning("Account %s no longer holds subscription %s; credits not reset",
                           account.id, account.subscription_id)
            return SKIPPED
        logger.info("Reset credits to %d for account %s", plan.credits, account.id)
        return APPLIED

    def _payment_failed(self, invoice, event_at):
        account = self._invoice_account(invoice)
        if account is None:
            return SKIPPED
        updated = self.ledger.update_subscribed(account.id, account.subscription_id, subscription_status="past_due")
        if updated is None:
            logger.warning("Account %s no longer holds subscription %s", account.id, account.subscription_id)
            return SKIPPED
        logger.info("Marked subscription as past_due for account %s", account.id)
        return APPLIED

"""Stripe webhook translation.

Gateway events are verified, matched to an account and turned into
subscription transitions.  This module never calls out to Stripe.
"""

from __future__ import annotations

import datetime
import json
import logging
from typing import Mapping, Optional

import stripe
from flask import current_app

from errors import ValidationError
from extensions import db
from models import Account, AccountSubscription, SubscriptionStatus
from services.status import SubscriptionDisplayStatus, effective_subscription_status
from services.subscriptions import (
    SubscriptionEvent,
    apply_status,
    change_plan,
    current_subscription,
    record_renewal,
    resubscribe,
    resume_subscription,
    transition,
)
from utils import as_utc, from_timestamp, utc_now

logger = logging.getLogger(__name__)

# Stripe subscription status -> stored status.
_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


class WebhookNotConfigured(Exception):
    """Stripe is disabled or the webhook secret is missing."""


def construct_event(payload: bytes, sig_header: str):
    """Verify the signature and return *payload* as a plain event dict.

    Raises ``WebhookNotConfigured`` or ``ValidationError``.
    """
    cfg = current_app.config.get("STRIPE_CONFIG")
    if cfg is None or not cfg.enabled or not cfg.webhook_secret:
        raise WebhookNotConfigured("Stripe webhooks are not configured")
    try:
        stripe.Webhook.construct_event(payload, sig_header, cfg.webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error("Stripe webhook verification failed: %s", e)
        raise ValidationError("Invalid Stripe webhook payload or signature")
    return json.loads(payload)


def _find_account(obj: Mapping) -> Optional[Account]:
    metadata = obj.get("metadata") or {}
    account_id = metadata.get("account_id")
    if account_id:
        try:
            account = db.session.get(Account, int(account_id))
        except (TypeError, ValueError):
            account = None
        if account is not None:
            return account
    customer_id = obj.get("customer")
    if customer_id:
        return Account.query.filter_by(stripe_customer_id=customer_id).first()
    return None


def _find_subscription(obj: Mapping) -> Optional[AccountSubscription]:
    """Match a Stripe subscription object by its id, else via the account."""
    stripe_sub_id = obj.get("id")
    if stripe_sub_id:
        sub = (
            AccountSubscription.query.filter_by(stripe_subscription_id=stripe_sub_id)
            .order_by(AccountSubscription.id.desc())
            .first()
        )
        if sub is not None:
            return sub
    account = _find_account(obj)
    return current_subscription(account.id) if account else None


def _invoice_period_end(obj: Mapping) -> Optional[datetime.datetime]:
    lines = (obj.get("lines") or {}).get("data") or []
    for line in lines:
        period = line.get("period") or {}
        if period.get("end"):
            return from_timestamp(period["end"])
    return None


def _charge_succeeded(sub: AccountSubscription, now, period_end) -> str:
    if sub.status == SubscriptionStatus.ACTIVE.value:
        record_renewal(sub, now, period_end)
        return "renewed"
    transition(sub, SubscriptionEvent.CHARGE_SUCCEEDED, now, period_end=period_end)
    return "activated"


def handle_checkout_completed(obj: Mapping, now: datetime.datetime) -> str:
    account = _find_account(obj)
    if account is None:
        logger.warning("Checkout session %s has no matching account", obj.get("id"))
        return "ignored"
    if obj.get("customer") and not account.stripe_customer_id:
        account.stripe_customer_id = obj["customer"]

    plan_id = (obj.get("metadata") or {}).get("plan_id")
    billing_cycle = (obj.get("metadata") or {}).get("billing_cycle") or "monthly"
    sub = current_subscription(account.id)
    if sub is None or effective_subscription_status(sub, now) == SubscriptionDisplayStatus.CANCELED:
        resubscribe(
            account.id,
            plan_id or (sub.plan_id if sub else current_app.config["BILLING_CONFIG"].default_plan_id),
            now,
            billing_cycle=billing_cycle,
            stripe_subscription_id=obj.get("subscription"),
        )
        return "subscribed"

    if obj.get("subscription"):
        sub.stripe_subscription_id = obj["subscription"]
    if plan_id and plan_id != sub.plan_id:
        change_plan(sub, plan_id, billing_cycle)
    return _charge_succeeded(sub, now, None)


def handle_payment_succeeded(obj: Mapping, now: datetime.datetime) -> str:
    account = _find_account(obj)
    sub = current_subscription(account.id) if account else None
    if sub is None:
        logger.warning("Payment for customer %s has no subscription", obj.get("customer"))
        return "ignored"
    return _charge_succeeded(sub, now, _invoice_period_end(obj))


def handle_payment_failed(obj: Mapping, now: datetime.datetime) -> str:
    account = _find_account(obj)
    sub = current_subscription(account.id) if account else None
    if sub is None:
        logger.warning("Failed payment for customer %s has no subscription", obj.get("customer"))
        return "ignored"
    if sub.status == SubscriptionStatus.PAST_DUE.value:
        # Another failed retry; still past due.
        return "unchanged"
    transition(sub, SubscriptionEvent.CHARGE_FAILED, now)
    return "past_due"


def handle_subscription_updated(obj: Mapping, now: datetime.datetime) -> str:
    sub = _find_subscription(obj)
    if sub is None:
        logger.warning("Stripe subscription %s has no matching record", obj.get("id"))
        return "ignored"
    if obj.get("id") and not sub.stripe_subscription_id:
        sub.stripe_subscription_id = obj["id"]

    actions = []
    wants_cancel = bool(obj.get("cancel_at_period_end"))
    period_end = from_timestamp(obj.get("current_period_end"))
    if period_end is not None and sub.status != SubscriptionStatus.CANCELED.value:
        sub.current_period_end = period_end

    live = sub.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)
    if wants_cancel and live and not sub.cancel_at_period_end:
        transition(sub, SubscriptionEvent.CANCEL, now)
        actions.append("cancel_scheduled")
    elif not wants_cancel and sub.cancel_at_period_end:
        resume_subscription(sub)
        actions.append("resumed")

    target = _STATUS_MAP.get(obj.get("status") or "")
    if target is None:
        logger.warning("Unknown Stripe subscription status %r", obj.get("status"))
    elif target.value != sub.status:
        apply_status(sub, target, now, reason="stripe subscription.updated")
        actions.append(target.value)
    db.session.flush()
    return ",".join(actions) or "unchanged"


def handle_subscription_deleted(obj: Mapping, now: datetime.datetime) -> str:
    sub = _find_subscription(obj)
    if sub is None:
        logger.warning("Deleted Stripe subscription %s has no matching record", obj.get("id"))
        return "ignored"
    status = SubscriptionStatus(sub.status)
    if status == SubscriptionStatus.CANCELED:
        return "unchanged"
    if status == SubscriptionStatus.PAST_DUE and not sub.cancel_at_period_end:
        transition(sub, SubscriptionEvent.RETRIES_EXHAUSTED, now)
    elif status == SubscriptionStatus.TRIALING:
        transition(sub, SubscriptionEvent.CANCEL, now)
    else:
        transition(sub, SubscriptionEvent.PERIOD_ENDED, now)
    return "canceled"


_HANDLERS = {
    "checkout.session.completed": handle_checkout_completed,
    "invoice.payment_succeeded": handle_payment_succeeded,
    "invoice.paid": handle_payment_succeeded,
    "invoice.payment_failed": handle_payment_failed,
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
}


def dispatch_event(event: Mapping, now: Optional[datetime.datetime] = None) -> str:
    """Apply a verified Stripe event.  Returns a short outcome label."""
    now = as_utc(now) or utc_now()
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type: %s", event_type)
        return "unhandled"
    outcome = handler(obj, now)
    logger.info("Stripe %s (%s): %s", event_type, event.get("id"), outcome)
    return outcome

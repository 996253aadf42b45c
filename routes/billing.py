"""Plan, subscription and quota routes, plus the Stripe webhook."""

import logging

from flask import Blueprint, current_app, jsonify, request
from flask_wtf.csrf import generate_csrf

from errors import InvalidTransition, NotFound, ValidationError
from extensions import csrf, db, limiter
from services.accounts import account_required, require_account
from services.plans import list_active_plans, plan_to_dict
from services.quota import ResourceKind, authorize
from services.status import trial_ending_soon
from services.stripe_billing import WebhookNotConfigured, construct_event, dispatch_event
from services.subscriptions import (
    SubscriptionEvent,
    change_plan,
    current_subscription,
    resume_subscription,
    subscription_to_dict,
    transition,
)
from utils import safe_decimal, utc_now

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__)


def _require_subscription(account_id: int):
    sub = current_subscription(account_id)
    if sub is None:
        raise NotFound("No subscription for this account")
    return sub


def _subscription_response(sub, now):
    warning_days = current_app.config["BILLING_CONFIG"].trial_warning_days
    return jsonify({
        "subscription": subscription_to_dict(sub, now),
        "trial_ending_soon": trial_ending_soon(sub, now, warning_days),
    })


# ---------------------------------------------------------------------------
# Plans & subscription
# ---------------------------------------------------------------------------

@billing_bp.route("/api/csrf-token")
def csrf_token():
    """Token for the X-CSRFToken header on state-changing calls."""
    return jsonify({"csrf_token": generate_csrf()})


@billing_bp.route("/api/plans")
def plans():
    return jsonify({"plans": [plan_to_dict(p) for p in list_active_plans()]})


@billing_bp.route("/api/subscription")
@account_required
def subscription_status():
    """Current subscription with its effective (derived) status."""
    sub = _require_subscription(require_account())
    return _subscription_response(sub, utc_now())


@billing_bp.route("/api/subscription/cancel", methods=["POST"])
@account_required
def cancel_subscription():
    data = request.get_json(silent=True) or {}
    now = utc_now()
    sub = _require_subscription(require_account())
    transition(sub, SubscriptionEvent.CANCEL, now, immediate=bool(data.get("immediate")))
    db.session.commit()
    return _subscription_response(sub, now)


@billing_bp.route("/api/subscription/resume", methods=["POST"])
@account_required
def resume():
    sub = _require_subscription(require_account())
    resume_subscription(sub)
    db.session.commit()
    return _subscription_response(sub, utc_now())


@billing_bp.route("/api/subscription/plan", methods=["POST"])
@account_required
def update_plan():
    data = request.get_json(silent=True) or {}
    plan_id = (data.get("plan_id") or "").strip()
    if not plan_id:
        raise ValidationError("plan_id is required")
    sub = _require_subscription(require_account())
    change_plan(sub, plan_id, data.get("billing_cycle"))
    db.session.commit()
    return _subscription_response(sub, utc_now())


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------

@billing_bp.route("/api/quota/<kind>")
@account_required
def quota_check(kind):
    """Dry-run authorization; 402 tells the client to show an upgrade prompt."""
    try:
        kind = ResourceKind(kind)
    except ValueError:
        raise NotFound(f"Unknown resource kind '{kind}'")
    raw = request.args.get("delta", "1")
    if kind == ResourceKind.STORAGE_GB:
        delta = safe_decimal(raw)
    else:
        delta = int(raw) if raw.strip().lstrip("-").isdigit() else None
    if delta is None:
        raise ValidationError("delta must be a number", details={"delta": raw})

    decision = authorize(require_account(), kind, delta)
    return jsonify(decision.to_dict()), (200 if decision.allowed else 402)


# ---------------------------------------------------------------------------
# Stripe webhook
# ---------------------------------------------------------------------------

@billing_bp.route("/webhook/stripe", methods=["POST"])
@csrf.exempt
@limiter.limit("120 per minute")
def webhook_stripe():
    """Handle Stripe webhook events."""
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature", "")
    try:
        event = construct_event(payload, sig_header)
    except WebhookNotConfigured:
        logger.warning("Stripe webhook received but Stripe is not configured")
        return jsonify({"status": "disabled"}), 503

    try:
        outcome = dispatch_event(event)
    except InvalidTransition as e:
        # Out-of-order or duplicate delivery; acknowledge so Stripe stops retrying.
        db.session.rollback()
        logger.warning("Stripe event %s rejected: %s", event.get("id"), e.message)
        return jsonify({"status": "ignored", "error": e.to_dict()}), 200
    db.session.commit()
    return jsonify({"status": "ok", "outcome": outcome}), 200

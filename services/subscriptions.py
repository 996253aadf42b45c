"""Account subscription lifecycle.

Every status change is triggered by an explicit event (user action or
payment-gateway webhook) and checked against ``ALLOWED_TRANSITIONS``.
Nothing here runs on a timer; time-based display states live in
``services.status``.
"""

from __future__ import annotations

import datetime
import enum
import logging
import math
from typing import Optional

from flask import current_app, has_app_context

from errors import InvalidTransition, NotFound, ValidationError
from extensions import db
from models import AccountSubscription, BillingCycle, Plan, SubscriptionStatus
from services.audit import log_action
from services.plans import PlanLimits, get_plan
from services.status import effective_subscription_status
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)

_S = SubscriptionStatus

ALLOWED_TRANSITIONS = frozenset({
    (_S.TRIALING, _S.ACTIVE),
    (_S.TRIALING, _S.CANCELED),
    (_S.ACTIVE, _S.PAST_DUE),
    (_S.PAST_DUE, _S.ACTIVE),
    (_S.PAST_DUE, _S.CANCELED),
    (_S.ACTIVE, _S.CANCELED),
})

DEFAULT_TRIAL_DAYS = 14


class SubscriptionEvent(str, enum.Enum):
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    TRIAL_ENDED = "trial_ended"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CANCEL = "cancel"
    PERIOD_ENDED = "period_ended"


def can_transition(current, target) -> bool:
    return (SubscriptionStatus(current), SubscriptionStatus(target)) in ALLOWED_TRANSITIONS


def _get_trial_days() -> int:
    if has_app_context():
        cfg = current_app.config.get("BILLING_CONFIG")
        if cfg is not None:
            return cfg.trial_days
    return DEFAULT_TRIAL_DAYS


def _default_plan_id() -> str:
    if has_app_context():
        cfg = current_app.config.get("BILLING_CONFIG")
        if cfg is not None:
            return cfg.default_plan_id
    return "plan-basic"


def period_end_for(start: datetime.datetime, billing_cycle: str) -> datetime.datetime:
    if BillingCycle(billing_cycle) == BillingCycle.YEARLY:
        return start + datetime.timedelta(days=365)
    return start + datetime.timedelta(days=30)


def _capture_plan(sub: AccountSubscription, plan: Plan) -> None:
    """Copy the plan's limits onto the subscription at assignment time."""
    sub.plan_id = plan.id
    sub.max_users = plan.max_users
    sub.max_animals = plan.max_animals
    sub.max_clients = plan.max_clients
    sub.max_storage_gb = plan.max_storage_gb
    sub.features = list(plan.features or [])


def subscription_limits(sub: AccountSubscription) -> PlanLimits:
    return PlanLimits(
        max_users=sub.max_users,
        max_animals=sub.max_animals,
        max_clients=sub.max_clients,
        max_storage_gb=sub.max_storage_gb,
    )


def current_subscription(account_id: int) -> Optional[AccountSubscription]:
    """Return the account's newest subscription record, or None."""
    return (
        AccountSubscription.query.filter_by(account_id=account_id)
        .order_by(AccountSubscription.id.desc())
        .first()
    )


def require_subscription(account_id: int) -> AccountSubscription:
    sub = current_subscription(account_id)
    if sub is None:
        raise NotFound(f"Account {account_id} has no subscription")
    return sub


def _active_plan(plan_id: str) -> Plan:
    plan = get_plan(plan_id)
    if not plan.is_active:
        raise ValidationError(f"Plan '{plan_id}' is no longer offered", details={"plan_id": plan_id})
    return plan


def create_trial_subscription(
    account_id: int,
    plan_id: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
    trial_days: Optional[int] = None,
) -> AccountSubscription:
    """Start the sign-up trial for a new account."""
    now = as_utc(now) or utc_now()
    trial_days = _get_trial_days() if trial_days is None else trial_days
    if trial_days <= 0:
        raise ValidationError("Trial length must be positive", details={"trial_days": trial_days})

    existing = current_subscription(account_id)
    if existing is not None and existing.status != SubscriptionStatus.CANCELED.value:
        raise ValidationError(
            f"Account {account_id} already has a subscription",
            details={"subscription_id": existing.id, "status": existing.status},
        )

    plan = _active_plan(plan_id or _default_plan_id())
    trial_ends_at = now + datetime.timedelta(days=trial_days)
    sub = AccountSubscription(
        account_id=account_id,
        status=SubscriptionStatus.TRIALING.value,
        billing_cycle=BillingCycle.MONTHLY.value,
        trial_ends_at=trial_ends_at,
        current_period_start=now,
        current_period_end=trial_ends_at,
        cancel_at_period_end=False,
    )
    _capture_plan(sub, plan)
    db.session.add(sub)
    db.session.flush()
    log_action(
        account_id, "create_trial", "subscription", sub.id,
        f"Trial on {plan.id} for {trial_days} days",
    )
    logger.info("Created trial subscription for account %s (%s days)", account_id, trial_days)
    return sub


def apply_status(
    sub: AccountSubscription,
    target,
    now: Optional[datetime.datetime] = None,
    *,
    reason: str = "",
) -> AccountSubscription:
    """Move *sub* to *target* if the transition table allows it.

    ``active -> canceled`` is only reachable once a deferred cancellation
    (``cancel_at_period_end``) has reached ``current_period_end``.
    """
    now = as_utc(now) or utc_now()
    current = SubscriptionStatus(sub.status)
    target = SubscriptionStatus(target)

    if (current, target) not in ALLOWED_TRANSITIONS:
        raise InvalidTransition(current.value, target.value)

    if current == _S.ACTIVE and target == _S.CANCELED:
        period_end = as_utc(sub.current_period_end)
        if not sub.cancel_at_period_end or now < period_end:
            raise InvalidTransition(
                current.value,
                target.value,
                "Active subscriptions are canceled at the end of the billing period",
            )

    sub.status = target.value
    if target == _S.CANCELED:
        sub.canceled_at = now
    db.session.flush()
    log_action(
        sub.account_id, "subscription_transition", "subscription", sub.id,
        f"{current.value} -> {target.value}" + (f" ({reason})" if reason else ""),
    )
    logger.info(
        "Subscription %s for account %s: %s -> %s",
        sub.id, sub.account_id, current.value, target.value,
    )
    return sub


def _start_period(
    sub: AccountSubscription,
    now: datetime.datetime,
    period_end: Optional[datetime.datetime],
) -> None:
    sub.current_period_start = now
    sub.current_period_end = as_utc(period_end) or period_end_for(now, sub.billing_cycle)


def transition(
    sub: AccountSubscription,
    event,
    now: Optional[datetime.datetime] = None,
    *,
    period_end: Optional[datetime.datetime] = None,
    immediate: bool = False,
) -> AccountSubscription:
    """Apply a lifecycle *event* to *sub*.

    ``cancel`` on an active or past-due subscription only sets
    ``cancel_at_period_end``; the terminal move happens on ``period_ended``.
    ``immediate=True`` cancels a past-due subscription straight away
    (admin action).  Raises ``InvalidTransition`` for anything else the
    table does not allow.
    """
    now = as_utc(now) or utc_now()
    event = SubscriptionEvent(event)
    current = SubscriptionStatus(sub.status)

    if event == SubscriptionEvent.CHARGE_SUCCEEDED:
        apply_status(sub, _S.ACTIVE, now, reason=event.value)
        _start_period(sub, now, period_end)
        db.session.flush()
        return sub

    if event == SubscriptionEvent.CHARGE_FAILED:
        return apply_status(sub, _S.PAST_DUE, now, reason=event.value)

    if event == SubscriptionEvent.TRIAL_ENDED:
        if current != _S.TRIALING:
            raise InvalidTransition(current.value, _S.CANCELED.value, "Only a trial can end")
        if now < as_utc(sub.trial_ends_at):
            raise InvalidTransition(current.value, _S.CANCELED.value, "The trial has not ended yet")
        return apply_status(sub, _S.CANCELED, now, reason=event.value)

    if event == SubscriptionEvent.RETRIES_EXHAUSTED:
        if current != _S.PAST_DUE:
            raise InvalidTransition(
                current.value, _S.CANCELED.value, "Charge retries only apply to past-due subscriptions"
            )
        return apply_status(sub, _S.CANCELED, now, reason=event.value)

    if event == SubscriptionEvent.CANCEL:
        if current == _S.TRIALING or (current == _S.PAST_DUE and immediate):
            return apply_status(sub, _S.CANCELED, now, reason="explicit cancel")
        if current in (_S.ACTIVE, _S.PAST_DUE):
            if immediate:
                raise InvalidTransition(
                    current.value,
                    _S.CANCELED.value,
                    "Active subscriptions are canceled at the end of the billing period",
                )
            if not sub.cancel_at_period_end:
                sub.cancel_at_period_end = True
                db.session.flush()
                log_action(
                    sub.account_id, "cancel_at_period_end", "subscription", sub.id,
                    f"Cancels at {as_utc(sub.current_period_end).isoformat()}",
                )
                logger.info(
                    "Subscription %s for account %s cancels at period end",
                    sub.id, sub.account_id,
                )
            return sub
        raise InvalidTransition(current.value, _S.CANCELED.value)

    # PERIOD_ENDED
    if current not in (_S.ACTIVE, _S.PAST_DUE) or not sub.cancel_at_period_end:
        raise InvalidTransition(
            current.value, _S.CANCELED.value, "No cancellation is scheduled for this period"
        )
    if now < as_utc(sub.current_period_end):
        raise InvalidTransition(
            current.value, _S.CANCELED.value, "The billing period has not ended yet"
        )
    return apply_status(sub, _S.CANCELED, now, reason=event.value)


def record_renewal(
    sub: AccountSubscription,
    now: Optional[datetime.datetime] = None,
    period_end: Optional[datetime.datetime] = None,
) -> AccountSubscription:
    """Advance the billing period of an active subscription after a renewal charge."""
    now = as_utc(now) or utc_now()
    if sub.status != _S.ACTIVE.value:
        raise InvalidTransition(sub.status, _S.ACTIVE.value, "Only active subscriptions renew")
    start = as_utc(sub.current_period_end) or now
    sub.current_period_start = start
    sub.current_period_end = as_utc(period_end) or period_end_for(start, sub.billing_cycle)
    db.session.flush()
    log_action(
        sub.account_id, "renewal", "subscription", sub.id,
        f"Period ends {as_utc(sub.current_period_end).isoformat()}",
    )
    logger.info("Renewed subscription %s for account %s", sub.id, sub.account_id)
    return sub


def resume_subscription(sub: AccountSubscription) -> AccountSubscription:
    """Withdraw a scheduled cancellation."""
    if sub.status == _S.CANCELED.value:
        raise InvalidTransition(
            sub.status, sub.status, "Canceled subscriptions cannot resume; subscribe again"
        )
    if sub.cancel_at_period_end:
        sub.cancel_at_period_end = False
        db.session.flush()
        log_action(sub.account_id, "resume", "subscription", sub.id, "")
        logger.info("Resumed subscription %s for account %s", sub.id, sub.account_id)
    return sub


def change_plan(
    sub: AccountSubscription,
    plan_id: str,
    billing_cycle: Optional[str] = None,
) -> AccountSubscription:
    """Move a live subscription to another plan, re-capturing its limits."""
    if sub.status in (_S.CANCELED.value, _S.INCOMPLETE.value):
        raise InvalidTransition(sub.status, sub.status, "Plan changes need a live subscription")
    plan = _active_plan(plan_id)
    previous = sub.plan_id
    _capture_plan(sub, plan)
    if billing_cycle is not None:
        sub.billing_cycle = BillingCycle(billing_cycle).value
    db.session.flush()
    log_action(sub.account_id, "change_plan", "subscription", sub.id, f"{previous} -> {plan.id}")
    logger.info("Account %s moved from plan %s to %s", sub.account_id, previous, plan.id)
    return sub


def resubscribe(
    account_id: int,
    plan_id: str,
    now: Optional[datetime.datetime] = None,
    *,
    billing_cycle: str = BillingCycle.MONTHLY.value,
    status=SubscriptionStatus.ACTIVE,
    period_end: Optional[datetime.datetime] = None,
    stripe_subscription_id: Optional[str] = None,
) -> AccountSubscription:
    """Create a fresh subscription record for an account whose last one is canceled.

    A lapsed deferred cancellation is resolved first, so its history row
    ends up ``canceled`` before the new row is added.
    """
    now = as_utc(now) or utc_now()
    status = SubscriptionStatus(status)
    if status not in (_S.ACTIVE, _S.INCOMPLETE):
        raise ValidationError(
            "A new subscription starts active or incomplete", details={"status": status.value}
        )

    previous = current_subscription(account_id)
    if previous is not None and previous.status != _S.CANCELED.value:
        if effective_subscription_status(previous, now).value == _S.CANCELED.value:
            transition(previous, SubscriptionEvent.PERIOD_ENDED, now)
        else:
            raise InvalidTransition(
                previous.status, status.value,
                "The current subscription must be canceled before subscribing again",
            )

    plan = _active_plan(plan_id)
    sub = AccountSubscription(
        account_id=account_id,
        status=status.value,
        billing_cycle=BillingCycle(billing_cycle).value,
        current_period_start=now,
        current_period_end=as_utc(period_end) or period_end_for(now, billing_cycle),
        cancel_at_period_end=False,
        stripe_subscription_id=stripe_subscription_id,
    )
    _capture_plan(sub, plan)
    db.session.add(sub)
    db.session.flush()
    log_action(account_id, "resubscribe", "subscription", sub.id, f"{plan.id} ({status.value})")
    logger.info("Account %s subscribed again on plan %s", account_id, plan.id)
    return sub


def days_remaining(sub: AccountSubscription, now: Optional[datetime.datetime] = None) -> Optional[int]:
    """Whole days left in the trial (when trialing) or the billing period, rounded up."""
    now = as_utc(now) or utc_now()
    if sub.status == _S.TRIALING.value:
        end = as_utc(sub.trial_ends_at)
    else:
        end = as_utc(sub.current_period_end)
    if end is None:
        return None
    seconds = (end - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def subscription_to_dict(sub: AccountSubscription, now: Optional[datetime.datetime] = None) -> dict:
    now = as_utc(now) or utc_now()
    trial_ends_at = as_utc(sub.trial_ends_at)
    period_end = as_utc(sub.current_period_end)
    return {
        "id": sub.id,
        "account_id": sub.account_id,
        "plan_id": sub.plan_id,
        "status": sub.status,
        "effective_status": effective_subscription_status(sub, now).value,
        "billing_cycle": sub.billing_cycle,
        "trial_ends_at": trial_ends_at.isoformat() if trial_ends_at else None,
        "current_period_end": period_end.isoformat() if period_end else None,
        "cancel_at_period_end": bool(sub.cancel_at_period_end),
        "days_remaining": days_remaining(sub, now),
        "limits": {
            "max_users": sub.max_users,
            "max_animals": sub.max_animals,
            "max_clients": sub.max_clients,
            "max_storage_gb": sub.max_storage_gb,
        },
        "features": sorted(sub.features or []),
    }

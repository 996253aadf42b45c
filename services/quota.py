"""Plan quota enforcement.

A denied request is a normal outcome, so ``authorize`` and ``reserve``
return a decision object rather than raising.  ``evaluate_quota`` is the
pure core and works on snapshots; ``reserve`` increments the counter row
with a conditional UPDATE that re-checks the limit.
"""

from __future__ import annotations

import datetime
import enum
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional, Union

from sqlalchemy import case, update

from errors import ValidationError
from extensions import db
from models import Capability, ResourceCounter
from services.plans import PlanLimits
from services.status import SubscriptionDisplayStatus, effective_subscription_status
from services.subscriptions import current_subscription, subscription_limits
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)


class ResourceKind(str, enum.Enum):
    USERS = "users"
    ANIMALS = "animals"
    CLIENTS = "clients"
    STORAGE_GB = "storage_gb"


# Resolution of the storage_gb counter column.
STORAGE_STEP = Decimal("0.001")

INACTIVE_STATUSES = frozenset({
    SubscriptionDisplayStatus.TRIAL_EXPIRED,
    SubscriptionDisplayStatus.PAST_DUE,
    SubscriptionDisplayStatus.CANCELED,
    SubscriptionDisplayStatus.INCOMPLETE,
})


@dataclass(frozen=True)
class Authorized:
    kind: ResourceKind
    limit: Optional[Union[int, Decimal]]
    current: Union[int, Decimal]
    delta: Union[int, Decimal]
    allowed = True

    def to_dict(self) -> dict:
        return {
            "allowed": True,
            "kind": self.kind.value,
            "limit": _plain(self.limit),
            "current": _plain(self.current),
        }


@dataclass(frozen=True)
class QuotaExceeded:
    kind: ResourceKind
    limit: Union[int, Decimal]
    current: Union[int, Decimal]
    delta: Union[int, Decimal]
    allowed = False

    def to_dict(self) -> dict:
        return {
            "allowed": False,
            "reason": "QUOTA_EXCEEDED",
            "kind": self.kind.value,
            "limit": _plain(self.limit),
            "current": _plain(self.current),
            "requested": _plain(self.delta),
        }


@dataclass(frozen=True)
class SubscriptionInactive:
    status: SubscriptionDisplayStatus
    allowed = False

    def to_dict(self) -> dict:
        return {
            "allowed": False,
            "reason": "SUBSCRIPTION_INACTIVE",
            "status": self.status.value,
        }


QuotaDecision = Union[Authorized, QuotaExceeded, SubscriptionInactive]


def _plain(value):
    if isinstance(value, Decimal):
        return str(value)
    return value


def _check_delta(kind: ResourceKind, delta) -> Union[int, Decimal]:
    if isinstance(delta, (bool, float)) or not isinstance(delta, (int, Decimal)):
        raise ValidationError("Quota delta must be an integer or Decimal", details={"delta": repr(delta)})
    if kind != ResourceKind.STORAGE_GB and not isinstance(delta, int):
        raise ValidationError(f"{kind.value} are counted in whole units", details={"delta": str(delta)})
    if isinstance(delta, Decimal):
        if not delta.is_finite():
            raise ValidationError("Quota delta must be a finite number", details={"delta": str(delta)})
        try:
            exact = delta == delta.quantize(STORAGE_STEP)
        except ArithmeticError:
            exact = False
        if not exact:
            raise ValidationError(
                "storage_gb is tracked to three decimal places", details={"delta": str(delta)}
            )
    if delta <= 0:
        raise ValidationError("Quota delta must be positive", details={"delta": str(delta)})
    return delta


def evaluate_quota(
    limits: PlanLimits,
    status,
    counters: Mapping[str, Union[int, Decimal]],
    kind,
    delta=1,
) -> QuotaDecision:
    """Decide whether *delta* more units of *kind* fit the limits.

    *status* is the effective (derived) subscription status.  A ``None``
    limit means unbounded.
    """
    kind = ResourceKind(kind)
    delta = _check_delta(kind, delta)
    status = SubscriptionDisplayStatus(status)
    if status in INACTIVE_STATUSES:
        return SubscriptionInactive(status=status)

    current = counters.get(kind.value) or 0
    limit = getattr(limits, f"max_{kind.value}")
    if limit is not None and current + delta > limit:
        return QuotaExceeded(kind=kind, limit=limit, current=current, delta=delta)
    return Authorized(kind=kind, limit=limit, current=current, delta=delta)


def _counter_snapshot(counter: Optional[ResourceCounter]) -> dict:
    if counter is None:
        return {kind.value: 0 for kind in ResourceKind}
    return {kind.value: getattr(counter, kind.value) or 0 for kind in ResourceKind}


def _locked_counter(account_id: int) -> ResourceCounter:
    """Return the account's counter row locked for update, creating it on first use."""
    counter = (
        ResourceCounter.query.filter_by(account_id=account_id)
        .with_for_update()
        .first()
    )
    if counter is None:
        counter = ResourceCounter(
            account_id=account_id,
            users=0,
            animals=0,
            clients=0,
            storage_gb=Decimal("0"),
        )
        db.session.add(counter)
        db.session.flush()
    return counter


def _decide(account_id: int, kind, delta, now, counters: Mapping) -> QuotaDecision:
    sub = current_subscription(account_id)
    if sub is None:
        kind = ResourceKind(kind)
        _check_delta(kind, delta)
        # An account that never subscribed is treated like an unpaid signup.
        return SubscriptionInactive(status=SubscriptionDisplayStatus.INCOMPLETE)
    status = effective_subscription_status(sub, now)
    return evaluate_quota(subscription_limits(sub), status, counters, kind, delta)


def authorize(account_id: int, kind, delta=1, now: Optional[datetime.datetime] = None) -> QuotaDecision:
    """Dry-run quota check against the current usage snapshot."""
    now = as_utc(now) or utc_now()
    counter = ResourceCounter.query.filter_by(account_id=account_id).first()
    return _decide(account_id, kind, delta, now, _counter_snapshot(counter))


def reserve(account_id: int, kind, delta=1, now: Optional[datetime.datetime] = None) -> QuotaDecision:
    """Check and increment usage in one step.

    The counter is only incremented when the decision is ``Authorized``, and
    the increment itself re-checks the limit in SQL so a concurrent reserve
    that took the last unit turns this one into ``QuotaExceeded``.
    """
    now = as_utc(now) or utc_now()
    counter = _locked_counter(account_id)
    decision = _decide(account_id, kind, delta, now, _counter_snapshot(counter))
    if not isinstance(decision, Authorized):
        logger.warning("Quota denied for account %s: %s", account_id, decision.to_dict())
        return decision

    field = decision.kind.value
    column = getattr(ResourceCounter, field)
    stmt = update(ResourceCounter).where(ResourceCounter.account_id == account_id)
    if decision.limit is not None:
        stmt = stmt.where(column + decision.delta <= decision.limit)
    result = db.session.execute(
        stmt.values({field: column + decision.delta})
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(counter)
    if result.rowcount != 1:
        decision = QuotaExceeded(
            kind=decision.kind,
            limit=decision.limit,
            current=getattr(counter, field) or 0,
            delta=decision.delta,
        )
        logger.warning("Quota denied for account %s: %s", account_id, decision.to_dict())
        return decision
    logger.info(
        "Reserved %s %s for account %s (now %s)",
        decision.delta, field, account_id, getattr(counter, field),
    )
    return decision


def release(account_id: int, kind, delta=1) -> ResourceCounter:
    """Give back *delta* units of *kind*; usage never drops below zero."""
    kind = ResourceKind(kind)
    delta = _check_delta(kind, delta)
    counter = _locked_counter(account_id)
    column = getattr(ResourceCounter, kind.value)
    db.session.execute(
        update(ResourceCounter)
        .where(ResourceCounter.account_id == account_id)
        .values({kind.value: case((column > delta, column - delta), else_=0)})
        .execution_options(synchronize_session=False)
    )
    db.session.refresh(counter)
    logger.info("Released %s %s for account %s", delta, kind.value, account_id)
    return counter


def has_capability(account_id: int, capability, now: Optional[datetime.datetime] = None) -> bool:
    """True when the current subscription is usable and its captured features include *capability*."""
    capability = Capability(capability)
    now = as_utc(now) or utc_now()
    sub = current_subscription(account_id)
    if sub is None:
        return False
    if effective_subscription_status(sub, now) in INACTIVE_STATUSES:
        return False
    return capability.value in (sub.features or [])

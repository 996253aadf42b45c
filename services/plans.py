"""Subscription plan catalog."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import event, inspect

from errors import NotFound, ValidationError
from extensions import db
from models import Capability, Plan
from services.audit import log_action
from services.money import Money

logger = logging.getLogger(__name__)

# Columns that may change on an existing plan; anything else needs a new plan id.
_MUTABLE_PLAN_COLUMNS = {"is_active"}


@dataclass(frozen=True)
class PlanLimits:
    """Resource limits of a plan or subscription; ``None`` means unbounded."""
    max_users: Optional[int]
    max_animals: Optional[int]
    max_clients: Optional[int]
    max_storage_gb: Optional[int]


def plan_limits(plan: Plan) -> PlanLimits:
    return PlanLimits(
        max_users=plan.max_users,
        max_animals=plan.max_animals,
        max_clients=plan.max_clients,
        max_storage_gb=plan.max_storage_gb,
    )


def parse_capabilities(tags: Iterable) -> list[str]:
    """Validate feature tags against ``Capability``; returns sorted tag values."""
    parsed = set()
    for tag in tags or []:
        try:
            parsed.add(Capability(tag).value)
        except ValueError:
            raise ValidationError(f"Unknown capability '{tag}'", details={"capability": tag})
    return sorted(parsed)


def _check_limit(name: str, value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer or null", details={name: value})
    return value


def get_plan(plan_id: str) -> Plan:
    plan = db.session.get(Plan, plan_id)
    if plan is None:
        raise NotFound(f"Plan '{plan_id}' not found")
    return plan


def list_active_plans() -> list[Plan]:
    return (
        Plan.query.filter_by(is_active=True)
        .order_by(Plan.sort_order, Plan.id)
        .all()
    )


def publish_plan(
    plan_id: str,
    name: str,
    *,
    price_monthly: Money,
    price_yearly: Money,
    max_users: Optional[int] = None,
    max_animals: Optional[int] = None,
    max_clients: Optional[int] = None,
    max_storage_gb: Optional[int] = None,
    features: Iterable = (),
    description: str = "",
    sort_order: int = 0,
    stripe_price_monthly: Optional[str] = None,
    stripe_price_yearly: Optional[str] = None,
) -> Plan:
    """Add a new plan to the catalog.  Existing ids are never overwritten."""
    plan_id = (plan_id or "").strip()
    if not plan_id or not (name or "").strip():
        raise ValidationError("Plan id and name are required")
    if db.session.get(Plan, plan_id) is not None:
        raise ValidationError(
            f"Plan '{plan_id}' already exists; publish a new id to change pricing",
            details={"plan_id": plan_id},
        )
    if price_monthly.currency != price_yearly.currency:
        raise ValidationError("Monthly and yearly prices must share a currency")
    if price_monthly.is_negative() or price_yearly.is_negative():
        raise ValidationError("Plan prices cannot be negative")

    plan = Plan(
        id=plan_id,
        name=name.strip(),
        description=description,
        currency=price_monthly.currency,
        price_monthly_cents=price_monthly.cents,
        price_yearly_cents=price_yearly.cents,
        max_users=_check_limit("max_users", max_users),
        max_animals=_check_limit("max_animals", max_animals),
        max_clients=_check_limit("max_clients", max_clients),
        max_storage_gb=_check_limit("max_storage_gb", max_storage_gb),
        features=parse_capabilities(features),
        sort_order=sort_order,
        stripe_price_monthly=stripe_price_monthly,
        stripe_price_yearly=stripe_price_yearly,
        is_active=True,
    )
    db.session.add(plan)
    log_action(None, "publish_plan", "plan", plan.id, f"Published plan {plan.name}")
    db.session.flush()
    logger.info("Published plan %s (%s)", plan.id, plan.name)
    return plan


def retire_plan(plan_id: str) -> Plan:
    """Hide a plan from new sign-ups.  Existing subscriptions keep their captured limits."""
    plan = get_plan(plan_id)
    plan.is_active = False
    log_action(None, "retire_plan", "plan", plan.id, "")
    db.session.flush()
    logger.info("Retired plan %s", plan.id)
    return plan


_DEFAULT_PLANS = [
    {
        "plan_id": "plan-basic",
        "name": "Basic",
        "description": "Perfect for small veterinary practices",
        "monthly": "99.90",
        "yearly": "999.90",
        "limits": (2, 500, 100, 5),
        "features": [
            "clients", "animals", "appointments", "invoicing",
            "reproductive", "sanitary", "reports_basic",
        ],
        "sort_order": 1,
    },
    {
        "plan_id": "plan-pro",
        "name": "Professional",
        "description": "For growing veterinary practices",
        "monthly": "199.90",
        "yearly": "1999.90",
        "limits": (5, 2000, 500, 20),
        "features": [
            "clients", "animals", "appointments", "invoicing",
            "reproductive", "sanitary", "reports_basic",
            "reports_advanced", "financial_reports",
        ],
        "sort_order": 2,
    },
    {
        "plan_id": "plan-enterprise",
        "name": "Enterprise",
        "description": "For large veterinary operations",
        "monthly": "499.90",
        "yearly": "4999.90",
        "limits": (20, 10000, 2000, 100),
        "features": [c.value for c in Capability],
        "sort_order": 3,
    },
]


def seed_default_plans(currency: str = "BRL") -> None:
    """Create the default plans if the catalog is empty."""
    if Plan.query.count() > 0:
        return
    for entry in _DEFAULT_PLANS:
        max_users, max_animals, max_clients, max_storage_gb = entry["limits"]
        publish_plan(
            entry["plan_id"],
            entry["name"],
            description=entry["description"],
            price_monthly=Money.from_decimal(entry["monthly"], currency),
            price_yearly=Money.from_decimal(entry["yearly"], currency),
            max_users=max_users,
            max_animals=max_animals,
            max_clients=max_clients,
            max_storage_gb=max_storage_gb,
            features=entry["features"],
            sort_order=entry["sort_order"],
        )
    logger.info("Seeded default subscription plans")


def plan_to_dict(plan: Plan) -> dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "description": plan.description,
        "price_monthly": plan.price_monthly.to_dict(),
        "price_yearly": plan.price_yearly.to_dict(),
        "limits": {
            "max_users": plan.max_users,
            "max_animals": plan.max_animals,
            "max_clients": plan.max_clients,
            "max_storage_gb": plan.max_storage_gb,
        },
        "features": sorted(plan.features or []),
        "sort_order": plan.sort_order,
        "is_active": plan.is_active,
    }


def _enforce_plan_immutability(session, flush_context, instances):
    """Reject in-place edits of catalog rows other than retiring them."""
    for obj in session.dirty:
        if not isinstance(obj, Plan) or not session.is_modified(obj):
            continue
        state = inspect(obj)
        changed = {
            attr.key for attr in state.attrs if attr.history.has_changes()
        } - _MUTABLE_PLAN_COLUMNS
        if changed:
            raise ValidationError(
                f"Plan '{obj.id}' is immutable; publish a new plan id instead",
                details={"plan_id": obj.id, "columns": sorted(changed)},
            )
    for obj in session.deleted:
        if isinstance(obj, Plan):
            raise ValidationError(
                f"Plan '{obj.id}' cannot be deleted; retire it instead",
                details={"plan_id": obj.id},
            )


def register_plan_guards(app):
    """Register the before_flush listener that keeps plans immutable."""
    if not event.contains(db.session, "before_flush", _enforce_plan_immutability):
        event.listen(db.session, "before_flush", _enforce_plan_immutability)

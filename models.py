"""SQLAlchemy models for the billing core."""

from __future__ import annotations

import enum

from extensions import db
from services.money import Money
from utils import utc_now


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class SubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    PIX = "pix"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    OTHER = "other"


class PaymentKind(str, enum.Enum):
    PAYMENT = "payment"
    REFUND = "refund"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Capability(str, enum.Enum):
    """Closed set of plan feature tags; UI gating and quotas read the same set."""
    CLIENTS = "clients"
    ANIMALS = "animals"
    APPOINTMENTS = "appointments"
    INVOICING = "invoicing"
    REPRODUCTIVE = "reproductive"
    SANITARY = "sanitary"
    REPORTS_BASIC = "reports_basic"
    REPORTS_ADVANCED = "reports_advanced"
    FINANCIAL_REPORTS = "financial_reports"
    API_ACCESS = "api_access"
    PRIORITY_SUPPORT = "priority_support"
    CUSTOM_INTEGRATIONS = "custom_integrations"


# ---------------------------------------------------------------------------
# Account (tenant)
# ---------------------------------------------------------------------------

class Account(db.Model):
    """A veterinary practice; every other row is scoped to one account."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    email = db.Column(db.String(120))
    stripe_customer_id = db.Column(db.String(120), index=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    subscriptions = db.relationship(
        "AccountSubscription",
        backref="account",
        order_by="AccountSubscription.id",
    )


class Client(db.Model):
    """Billable client.  Maintained by the CRUD layer; read here for validation."""
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), nullable=False, index=True)
    name = db.Column(db.String(160), nullable=False)
    email = db.Column(db.String(120))
    phone = db.Column(db.String(60))
    deleted_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)


# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------

class Plan(db.Model):
    """Immutable subscription tier.  New pricing means a new plan id."""
    id = db.Column(db.String(60), primary_key=True)
    name = db.Column(db.String(60), nullable=False)
    description = db.Column(db.Text)
    currency = db.Column(db.String(3), nullable=False)
    price_monthly_cents = db.Column(db.BigInteger, nullable=False, default=0)
    price_yearly_cents = db.Column(db.BigInteger, nullable=False, default=0)
    max_users = db.Column(db.Integer)  # NULL = unbounded
    max_animals = db.Column(db.Integer)
    max_clients = db.Column(db.Integer)
    max_storage_gb = db.Column(db.Integer)
    features = db.Column(db.JSON, nullable=False, default=list)
    stripe_price_monthly = db.Column(db.String(120))
    stripe_price_yearly = db.Column(db.String(120))
    is_active = db.Column(db.Boolean, default=True)
    sort_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    @property
    def price_monthly(self) -> Money:
        return Money(self.price_monthly_cents, self.currency)

    @property
    def price_yearly(self) -> Money:
        return Money(self.price_yearly_cents, self.currency)

    @property
    def capabilities(self) -> frozenset:
        return frozenset(Capability(tag) for tag in (self.features or []))


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

class AccountSubscription(db.Model):
    """An account's subscription record.

    The newest row per account is the current one; earlier rows are history.
    Limits and features are copied from the plan when it is assigned so a
    later catalog change never alters an existing subscription.
    """
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), nullable=False, index=True)
    plan_id = db.Column(db.String(60), db.ForeignKey("plan.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=SubscriptionStatus.TRIALING.value)
    billing_cycle = db.Column(db.String(20), nullable=False, default=BillingCycle.MONTHLY.value)
    trial_ends_at = db.Column(db.DateTime(timezone=True))
    current_period_start = db.Column(db.DateTime(timezone=True))
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=False)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    canceled_at = db.Column(db.DateTime(timezone=True))
    max_users = db.Column(db.Integer)
    max_animals = db.Column(db.Integer)
    max_clients = db.Column(db.Integer)
    max_storage_gb = db.Column(db.Integer)
    features = db.Column(db.JSON, nullable=False, default=list)
    stripe_subscription_id = db.Column(db.String(120), index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    plan = db.relationship("Plan")

    __table_args__ = (
        db.Index("ix_account_subscription_status", "status"),
    )


class ResourceCounter(db.Model):
    """Live resource usage per account, maintained alongside entity creates/deletes."""
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), unique=True, nullable=False)
    users = db.Column(db.Integer, nullable=False, default=0)
    animals = db.Column(db.Integer, nullable=False, default=0)
    clients = db.Column(db.Integer, nullable=False, default=0)
    storage_gb = db.Column(db.Numeric(12, 3, asdecimal=True), nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class Invoice(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("client.id"), nullable=False)
    invoice_number = db.Column(db.String(40))
    issue_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    tax_amount_cents = db.Column(db.BigInteger, nullable=False, default=0)
    # Cache of the item-derived total, written only by the ledger.
    total_amount_cents = db.Column(db.BigInteger, nullable=False, default=0)
    paid_amount_cents = db.Column(db.BigInteger, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=InvoiceStatus.DRAFT.value)
    fiscal_number = db.Column(db.String(60))
    notes = db.Column(db.Text)
    finalized_at = db.Column(db.DateTime(timezone=True))
    paid_at = db.Column(db.DateTime(timezone=True))
    cancelled_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    client = db.relationship("Client")
    items = db.relationship(
        "InvoiceItem",
        backref="invoice",
        order_by="InvoiceItem.position",
        cascade="all, delete-orphan",
    )
    payments = db.relationship(
        "Payment",
        backref="invoice",
        order_by="Payment.id",
    )

    __table_args__ = (
        db.Index("ix_invoice_status", "status"),
        db.Index("ix_invoice_client_id", "client_id"),
        db.UniqueConstraint("account_id", "invoice_number", name="uq_invoice_number_account"),
    )

    @property
    def tax_amount(self) -> Money:
        return Money(self.tax_amount_cents or 0, self.currency)

    @property
    def paid_amount(self) -> Money:
        return Money(self.paid_amount_cents or 0, self.currency)

    @property
    def stored_total(self) -> Money:
        return Money(self.total_amount_cents or 0, self.currency)


class InvoiceItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Numeric(12, 3, asdecimal=True), nullable=False, default=1)
    unit_price_cents = db.Column(db.BigInteger, nullable=False)
    discount_percent = db.Column(db.Numeric(5, 2, asdecimal=True), nullable=False, default=0)
    service_id = db.Column(db.Integer)
    animal_id = db.Column(db.Integer)


class Payment(db.Model):
    """Append-only ledger entry against an invoice.  Refunds carry a negative amount."""
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), nullable=False, index=True)
    kind = db.Column(db.String(10), nullable=False, default=PaymentKind.PAYMENT.value)
    amount_cents = db.Column(db.BigInteger, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    method = db.Column(db.String(30), nullable=False)
    payment_date = db.Column(db.DateTime(timezone=True), nullable=False)
    reference = db.Column(db.String(120))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    @property
    def amount(self) -> Money:
        return Money(self.amount_cents, self.currency)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), index=True)
    actor = db.Column(db.String(120))
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.String(60))
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )


# ---------------------------------------------------------------------------
# Invoice numbering
# ---------------------------------------------------------------------------

class NumberingConfig(db.Model):
    """Tag-based invoice numbering pattern per account.

    Pattern example: ``INV-[YYYY]-[CCCCCC]`` -> ``INV-2026-000001``
    Tags: [YYYY] [YY] [MM] [DD] [C+]
    Counter resets when preceding scope-tags change.
    """
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), index=True)
    entity_type = db.Column(db.String(40), nullable=False)
    pattern = db.Column(db.String(120), default="")

    __table_args__ = (
        db.UniqueConstraint("account_id", "entity_type", name="uq_numbering_config_account"),
    )


class NumberSequence(db.Model):
    """Sequence counters per entity type, scope, and account."""
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("account.id"), index=True)
    entity_type = db.Column(db.String(40), nullable=False)
    scope_key = db.Column(db.String(120), default="")
    last_value = db.Column(db.Integer, default=0)

    __table_args__ = (
        db.UniqueConstraint("account_id", "entity_type", "scope_key", name="uq_number_sequence"),
    )

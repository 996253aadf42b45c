"""Invoice ledger: drafting, finalization, cancellation and reporting.

Totals are always recomputed from the items and the tax amount; the stored
``total_amount_cents`` is a cache written only here.  Items are frozen once
an invoice leaves ``draft``.
"""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from flask import current_app, has_app_context
from sqlalchemy import event, inspect

from errors import (
    CannotCancelPaidInvoice,
    InvalidTransition,
    InvoiceLocked,
    NotFound,
    ValidationError,
)
from extensions import db
from models import Client, Invoice, InvoiceItem, InvoiceStatus, Payment
from services.accounts import account_get_or_404, account_query
from services.audit import log_action
from services.money import Money, normalize_currency, progress_percent, sum_money
from services.numbering import generate_number
from services.status import InvoiceDisplayStatus, effective_invoice_status
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)

_Q3 = Decimal("0.001")
_Q2 = Decimal("0.01")

OPEN_STATUSES = (
    InvoiceStatus.SENT.value,
    InvoiceStatus.PARTIAL.value,
    InvoiceStatus.OVERDUE.value,
)

AGING_BUCKETS = ("current", "1_30", "31_60", "over_60")
STATS_WINDOW_DAYS = 30


# ---------------------------------------------------------------------------
# Configuration helpers
# ---------------------------------------------------------------------------

def _default_currency() -> str:
    if has_app_context():
        cfg = current_app.config.get("BILLING_CONFIG")
        if cfg is not None:
            return cfg.currency
    return "BRL"


def _number_pattern() -> Optional[str]:
    if has_app_context():
        cfg = current_app.config.get("BILLING_CONFIG")
        if cfg is not None:
            return cfg.invoice_number_pattern
    return None


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------

def _decimal_input(value, what: str, places: Decimal) -> Decimal:
    if isinstance(value, (bool, float)) or value is None:
        raise ValidationError(f"{what} must be a decimal number", details={what: repr(value)})
    try:
        result = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except ArithmeticError:
        raise ValidationError(f"{what} is not a number", details={what: str(value)})
    if not result.is_finite():
        raise ValidationError(f"{what} must be finite", details={what: str(value)})
    try:
        exact = result == result.quantize(places)
    except ArithmeticError:
        raise ValidationError(f"{what} is out of range", details={what: str(value)})
    if not exact:
        raise ValidationError(f"{what} has too many decimal places", details={what: str(value)})
    return result


def parse_quantity(value) -> Decimal:
    quantity = _decimal_input(value, "quantity", _Q3)
    if quantity <= 0:
        raise ValidationError("quantity must be positive", details={"quantity": str(quantity)})
    return quantity


def parse_discount(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    discount = _decimal_input(value, "discount_percent", _Q2)
    if discount < 0 or discount > 100:
        raise ValidationError(
            "discount_percent must be between 0 and 100",
            details={"discount_percent": str(discount)},
        )
    return discount


def parse_amount(value, currency: str) -> Money:
    """Accept a ``Money`` in *currency* or a major-unit decimal string."""
    if isinstance(value, Money):
        if value.currency != currency:
            raise ValidationError(
                "Amount currency does not match the invoice",
                details={"amount": value.currency, "invoice": currency},
            )
        return value
    if value is None or value == "":
        raise ValidationError("Amount is required")
    return Money.from_decimal(value, currency)


def _build_item(account_id: int, data: Mapping, currency: str, position: int) -> InvoiceItem:
    description = (data.get("description") or "").strip()
    if not description:
        raise ValidationError("Item description is required")
    unit_price = parse_amount(data.get("unit_price"), currency)
    if unit_price.is_negative():
        raise ValidationError("unit_price cannot be negative", details={"unit_price": str(unit_price)})
    return InvoiceItem(
        account_id=account_id,
        position=position,
        description=description[:255],
        quantity=parse_quantity(data.get("quantity", 1)),
        unit_price_cents=unit_price.cents,
        discount_percent=parse_discount(data.get("discount_percent")),
        service_id=data.get("service_id"),
        animal_id=data.get("animal_id"),
    )


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------

def line_total(item: InvoiceItem, currency: str) -> Money:
    """``quantity x unit_price x (1 - discount)``, rounded once half-up."""
    discount = Decimal(item.discount_percent or 0)
    factor = Decimal(item.quantity) * (Decimal(100) - discount) / Decimal(100)
    return Money(item.unit_price_cents, currency).times(factor)


def compute_subtotal(invoice: Invoice) -> Money:
    return sum_money((line_total(item, invoice.currency) for item in invoice.items), invoice.currency)


def compute_total(invoice: Invoice) -> Money:
    return compute_subtotal(invoice) + invoice.tax_amount


def _recompute_total(invoice: Invoice) -> Money:
    total = compute_total(invoice)
    invoice.total_amount_cents = total.cents
    return total


def remaining_balance(invoice: Invoice) -> Money:
    return invoice.stored_total - invoice.paid_amount


def _require_draft(invoice: Invoice) -> None:
    if invoice.status != InvoiceStatus.DRAFT.value:
        raise InvoiceLocked(invoice.id, invoice.status)


def _locked_invoice(account_id: int, invoice_id: int) -> Invoice:
    return account_get_or_404(Invoice, invoice_id, account_id, for_update=True)


def _renumber(invoice: Invoice) -> None:
    for position, item in enumerate(invoice.items, start=1):
        item.position = position


# ---------------------------------------------------------------------------
# Draft operations
# ---------------------------------------------------------------------------

def create_invoice(
    account_id: int,
    client_id: int,
    due_date: datetime.date,
    items: Iterable[Mapping] = (),
    *,
    issue_date: Optional[datetime.date] = None,
    currency: Optional[str] = None,
    tax_amount=None,
    notes: Optional[str] = None,
) -> Invoice:
    """Create a draft invoice for one of the account's clients."""
    client = account_get_or_404(Client, client_id, account_id)
    if client.deleted_at is not None:
        raise ValidationError("Cannot invoice a deleted client", details={"client_id": client_id})
    if not isinstance(due_date, datetime.date):
        raise ValidationError("due_date is required")
    issue_date = issue_date or utc_now().date()
    if due_date < issue_date:
        raise ValidationError(
            "due_date cannot be before issue_date",
            details={"issue_date": issue_date.isoformat(), "due_date": due_date.isoformat()},
        )
    currency = normalize_currency(currency or _default_currency())

    invoice = Invoice(
        account_id=account_id,
        client_id=client.id,
        issue_date=issue_date,
        due_date=due_date,
        currency=currency,
        tax_amount_cents=0,
        paid_amount_cents=0,
        status=InvoiceStatus.DRAFT.value,
        notes=notes,
    )
    for position, data in enumerate(items or [], start=1):
        invoice.items.append(_build_item(account_id, data, currency, position))
    if tax_amount is not None:
        tax = parse_amount(tax_amount, currency)
        if tax.is_negative():
            raise ValidationError("tax_amount cannot be negative")
        invoice.tax_amount_cents = tax.cents
    _recompute_total(invoice)

    db.session.add(invoice)
    db.session.flush()
    log_action(account_id, "create", "invoice", invoice.id, f"Draft for client {client.id}")
    logger.info("Created draft invoice %s for account %s", invoice.id, account_id)
    return invoice


def add_item(account_id: int, invoice_id: int, data: Mapping) -> InvoiceItem:
    invoice = _locked_invoice(account_id, invoice_id)
    _require_draft(invoice)
    item = _build_item(account_id, data, invoice.currency, len(invoice.items) + 1)
    invoice.items.append(item)
    _recompute_total(invoice)
    db.session.flush()
    log_action(account_id, "add_item", "invoice", invoice.id, item.description)
    logger.info("Added item %s to invoice %s", item.id, invoice.id)
    return item


def remove_item(account_id: int, invoice_id: int, item_id: int) -> Invoice:
    invoice = _locked_invoice(account_id, invoice_id)
    _require_draft(invoice)
    item = next((i for i in invoice.items if i.id == item_id), None)
    if item is None:
        raise NotFound(f"Item {item_id} not found on invoice {invoice_id}")
    invoice.items.remove(item)
    _renumber(invoice)
    _recompute_total(invoice)
    db.session.flush()
    log_action(account_id, "remove_item", "invoice", invoice.id, f"Item {item_id}")
    logger.info("Removed item %s from invoice %s", item_id, invoice.id)
    return invoice


def apply_discount(account_id: int, invoice_id: int, percent, item_id: Optional[int] = None) -> Invoice:
    """Set the discount on one item, or on every item when *item_id* is None."""
    invoice = _locked_invoice(account_id, invoice_id)
    _require_draft(invoice)
    discount = parse_discount(percent)
    if item_id is None:
        targets = list(invoice.items)
    else:
        targets = [i for i in invoice.items if i.id == item_id]
        if not targets:
            raise NotFound(f"Item {item_id} not found on invoice {invoice_id}")
    for item in targets:
        item.discount_percent = discount
    _recompute_total(invoice)
    db.session.flush()
    log_action(
        account_id, "apply_discount", "invoice", invoice.id,
        f"{discount}% on {'all items' if item_id is None else f'item {item_id}'}",
    )
    return invoice


def set_tax(account_id: int, invoice_id: int, amount) -> Invoice:
    invoice = _locked_invoice(account_id, invoice_id)
    _require_draft(invoice)
    tax = parse_amount(amount, invoice.currency)
    if tax.is_negative():
        raise ValidationError("tax_amount cannot be negative")
    invoice.tax_amount_cents = tax.cents
    _recompute_total(invoice)
    db.session.flush()
    log_action(account_id, "set_tax", "invoice", invoice.id, str(tax))
    return invoice


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def finalize_invoice(account_id: int, invoice_id: int, now: Optional[datetime.datetime] = None) -> Invoice:
    """Move a draft to ``sent``, assign its number and freeze its items."""
    now = as_utc(now) or utc_now()
    invoice = _locked_invoice(account_id, invoice_id)
    if invoice.status != InvoiceStatus.DRAFT.value:
        raise InvalidTransition(invoice.status, InvoiceStatus.SENT.value)
    if not invoice.items:
        raise ValidationError("Cannot finalize an invoice without items", details={"invoice_id": invoice.id})
    total = _recompute_total(invoice)
    if not total.is_positive():
        raise ValidationError(
            "Invoice total must be positive", details={"invoice_id": invoice.id, "total": str(total)}
        )

    invoice.invoice_number = generate_number(
        account_id, "invoice", when=invoice.issue_date, default_pattern=_number_pattern()
    )
    invoice.status = InvoiceStatus.SENT.value
    invoice.finalized_at = now
    db.session.flush()
    log_action(account_id, "finalize", "invoice", invoice.id, f"{invoice.invoice_number} {total}")
    logger.info("Finalized invoice %s as %s (%s)", invoice.id, invoice.invoice_number, total)
    return invoice


def cancel_invoice(
    account_id: int,
    invoice_id: int,
    now: Optional[datetime.datetime] = None,
    reason: str = "",
) -> Invoice:
    """Soft-cancel an invoice.  Only allowed while nothing is paid."""
    now = as_utc(now) or utc_now()
    invoice = _locked_invoice(account_id, invoice_id)
    if invoice.paid_amount_cents:
        raise CannotCancelPaidInvoice(invoice.id, invoice.paid_amount)
    if invoice.status in (InvoiceStatus.CANCELLED.value, InvoiceStatus.PAID.value):
        raise InvalidTransition(invoice.status, InvoiceStatus.CANCELLED.value)
    previous = invoice.status
    invoice.status = InvoiceStatus.CANCELLED.value
    invoice.cancelled_at = now
    db.session.flush()
    log_action(account_id, "cancel", "invoice", invoice.id, reason or f"from {previous}")
    logger.info("Cancelled invoice %s (was %s)", invoice.id, previous)
    return invoice


def record_fiscal_number(account_id: int, invoice_id: int, fiscal_number: str) -> Invoice:
    """Store the number issued by the fiscal authority.  Set once."""
    fiscal_number = (fiscal_number or "").strip()
    if not fiscal_number:
        raise ValidationError("fiscal_number is required")
    invoice = _locked_invoice(account_id, invoice_id)
    allowed = (InvoiceStatus.SENT.value, InvoiceStatus.PARTIAL.value, InvoiceStatus.PAID.value)
    if invoice.status not in allowed:
        raise InvalidTransition(invoice.status, invoice.status, "Only issued invoices receive a fiscal number")
    if invoice.fiscal_number:
        raise ValidationError(
            "Fiscal number already recorded",
            details={"invoice_id": invoice.id, "fiscal_number": invoice.fiscal_number},
        )
    invoice.fiscal_number = fiscal_number[:60]
    db.session.flush()
    log_action(account_id, "fiscal_number", "invoice", invoice.id, invoice.fiscal_number)
    logger.info("Recorded fiscal number %s for invoice %s", invoice.fiscal_number, invoice.id)
    return invoice


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_invoice(account_id: int, invoice_id: int) -> Invoice:
    return account_get_or_404(Invoice, invoice_id, account_id)


def _date_range_filter(query, date_from: Optional[datetime.date], date_to: Optional[datetime.date]):
    if date_from and date_to and date_from > date_to:
        raise ValidationError(
            "date_from must not be after date_to",
            details={"date_from": date_from.isoformat(), "date_to": date_to.isoformat()},
        )
    if date_from is not None:
        query = query.filter(Invoice.issue_date >= date_from)
    if date_to is not None:
        query = query.filter(Invoice.issue_date <= date_to)
    return query


def list_invoices(
    account_id: int,
    *,
    status: Optional[str] = None,
    client_id: Optional[int] = None,
    date_from: Optional[datetime.date] = None,
    date_to: Optional[datetime.date] = None,
    now: Optional[datetime.datetime] = None,
) -> list[Invoice]:
    """List invoices newest first.

    *status* filters on the effective status; *date_from* and *date_to*
    bound the issue date, both inclusive.
    """
    now = as_utc(now) or utc_now()
    query = account_query(Invoice, account_id)
    if client_id is not None:
        query = query.filter_by(client_id=client_id)
    query = _date_range_filter(query, date_from, date_to)
    wanted = InvoiceDisplayStatus(status) if status else None
    if wanted in (InvoiceDisplayStatus.OVERDUE, InvoiceDisplayStatus.SENT, InvoiceDisplayStatus.PARTIAL):
        query = query.filter(Invoice.status.in_(OPEN_STATUSES))
    elif wanted is not None:
        query = query.filter_by(status=wanted.value)
    invoices = query.order_by(Invoice.issue_date.desc(), Invoice.id.desc()).all()
    if wanted is None:
        return invoices
    return [inv for inv in invoices if effective_invoice_status(inv, now) == wanted]


def _aging_bucket(days_overdue: int) -> str:
    if days_overdue <= 0:
        return "current"
    if days_overdue <= 30:
        return "1_30"
    if days_overdue <= 60:
        return "31_60"
    return "over_60"


def receivables_summary(account_id: int, now: Optional[datetime.datetime] = None) -> dict:
    """Outstanding balances of open invoices grouped by currency and days overdue."""
    now = as_utc(now) or utc_now()
    today = now.date()
    open_invoices = (
        account_query(Invoice, account_id)
        .filter(Invoice.status.in_(OPEN_STATUSES))
        .all()
    )

    by_currency: dict[str, dict] = {}
    for invoice in open_invoices:
        balance = remaining_balance(invoice)
        summary = by_currency.setdefault(
            invoice.currency,
            {
                "buckets": {name: Money.zero(invoice.currency) for name in AGING_BUCKETS},
                "counts": {name: 0 for name in AGING_BUCKETS},
                "total": Money.zero(invoice.currency),
            },
        )
        bucket = _aging_bucket((today - invoice.due_date).days)
        summary["buckets"][bucket] = summary["buckets"][bucket] + balance
        summary["counts"][bucket] += 1
        summary["total"] = summary["total"] + balance

    return {
        "as_of": today.isoformat(),
        "currencies": {
            code: {
                "buckets": {name: amount.to_dict() for name, amount in data["buckets"].items()},
                "counts": data["counts"],
                "total": data["total"].to_dict(),
            }
            for code, data in sorted(by_currency.items())
        },
    }


def invoice_stats(
    account_id: int,
    date_from: Optional[datetime.date] = None,
    date_to: Optional[datetime.date] = None,
    now: Optional[datetime.datetime] = None,
) -> dict:
    """Invoiced, received and pending totals per currency over an issue-date window.

    The window defaults to the last ``STATS_WINDOW_DAYS`` days.  Received
    money is counted by payment date, so refunds inside the window reduce it.
    """
    now = as_utc(now) or utc_now()
    date_to = date_to or now.date()
    date_from = date_from or date_to - datetime.timedelta(days=STATS_WINDOW_DAYS)
    invoices = (
        _date_range_filter(account_query(Invoice, account_id), date_from, date_to)
        .filter(Invoice.status != InvoiceStatus.CANCELLED.value)
        .all()
    )
    start = datetime.datetime.combine(date_from, datetime.time.min, tzinfo=timezone.utc)
    end = datetime.datetime.combine(date_to + datetime.timedelta(days=1), datetime.time.min, tzinfo=timezone.utc)
    payments = (
        account_query(Payment, account_id)
        .filter(Payment.payment_date >= start, Payment.payment_date < end)
        .all()
    )

    totals: dict[str, dict] = {}

    def bucket(currency: str) -> dict:
        zero = Money.zero(currency)
        return totals.setdefault(currency, {
            "invoiced": zero, "received": zero, "pending": zero,
            "invoice_count": 0, "payment_count": 0,
        })

    for invoice in invoices:
        entry = bucket(invoice.currency)
        entry["invoiced"] = entry["invoiced"] + invoice.stored_total
        entry["invoice_count"] += 1
        if invoice.status in OPEN_STATUSES:
            entry["pending"] = entry["pending"] + remaining_balance(invoice)
    for payment in payments:
        entry = bucket(payment.currency)
        entry["received"] = entry["received"] + payment.amount
        entry["payment_count"] += 1

    return {
        "period_start": date_from.isoformat(),
        "period_end": date_to.isoformat(),
        "currencies": {
            code: {
                key: value.to_dict() if isinstance(value, Money) else value
                for key, value in entry.items()
            }
            for code, entry in sorted(totals.items())
        },
    }


def item_to_dict(item: InvoiceItem, currency: str) -> dict:
    return {
        "id": item.id,
        "position": item.position,
        "description": item.description,
        "quantity": str(item.quantity),
        "unit_price": Money(item.unit_price_cents, currency).to_dict(),
        "discount_percent": str(item.discount_percent),
        "line_total": line_total(item, currency).to_dict(),
        "service_id": item.service_id,
        "animal_id": item.animal_id,
    }


def payment_to_dict(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "kind": payment.kind,
        "amount": payment.amount.to_dict(),
        "method": payment.method,
        "payment_date": as_utc(payment.payment_date).isoformat(),
        "reference": payment.reference,
        "notes": payment.notes,
    }


def invoice_to_dict(invoice: Invoice, now: Optional[datetime.datetime] = None) -> dict:
    now = as_utc(now) or utc_now()
    total = invoice.stored_total
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "client_id": invoice.client_id,
        "issue_date": invoice.issue_date.isoformat(),
        "due_date": invoice.due_date.isoformat(),
        "status": invoice.status,
        "effective_status": effective_invoice_status(invoice, now).value,
        "currency": invoice.currency,
        "subtotal": compute_subtotal(invoice).to_dict(),
        "tax_amount": invoice.tax_amount.to_dict(),
        "total_amount": total.to_dict(),
        "paid_amount": invoice.paid_amount.to_dict(),
        "balance": remaining_balance(invoice).to_dict(),
        "paid_percent": str(progress_percent(invoice.paid_amount, total)),
        "fiscal_number": invoice.fiscal_number,
        "notes": invoice.notes,
        "items": [item_to_dict(item, invoice.currency) for item in invoice.items],
        "payments": [payment_to_dict(p) for p in invoice.payments],
    }


# ---------------------------------------------------------------------------
# Flush guards
# ---------------------------------------------------------------------------

def _loaded_status(invoice: Invoice) -> str:
    """Status as it was before the pending flush."""
    history = inspect(invoice).attrs.status.history
    if history.deleted:
        return history.deleted[0]
    return invoice.status


def _enforce_ledger_rules(session, flush_context, instances):
    """Keep items frozen after draft, payments append-only and totals consistent."""
    for obj in list(session.new) + list(session.dirty) + list(session.deleted):
        if not isinstance(obj, InvoiceItem):
            continue
        if obj in session.dirty and not session.is_modified(obj):
            continue
        invoice = obj.invoice
        if invoice is None and obj.invoice_id is not None:
            invoice = session.get(Invoice, obj.invoice_id)
        if invoice is not None:
            status = _loaded_status(invoice)
            if status != InvoiceStatus.DRAFT.value:
                raise InvoiceLocked(invoice.id, status)

    for obj in list(session.dirty) + list(session.deleted):
        if isinstance(obj, Payment) and (obj in session.deleted or session.is_modified(obj)):
            raise ValidationError(
                "Payments are append-only; record a refund instead",
                details={"payment_id": obj.id},
            )

    for obj in list(session.new) + list(session.dirty):
        if not isinstance(obj, Invoice):
            continue
        if obj in session.dirty and not session.is_modified(obj):
            continue
        total = compute_total(obj)
        if total.cents != (obj.total_amount_cents or 0):
            raise ValidationError(
                "Invoice total does not match its items",
                details={"invoice_id": obj.id, "stored": obj.total_amount_cents, "computed": total.cents},
            )
        paid = obj.paid_amount_cents or 0
        if paid < 0 or paid > (obj.total_amount_cents or 0):
            raise ValidationError(
                "Paid amount must stay between zero and the invoice total",
                details={"invoice_id": obj.id, "paid": obj.paid_amount_cents},
            )


def register_ledger_guards(app):
    """Register the before_flush listener for invoices and payments."""
    if not event.contains(db.session, "before_flush", _enforce_ledger_rules):
        event.listen(db.session, "before_flush", _enforce_ledger_rules)

"""Recording payments and refunds against invoices.

The cached paid amount moves through a single conditional UPDATE, so two
payments racing for the same balance cannot both succeed even where the
database ignores row locks.
"""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from typing import Optional

from sqlalchemy import update

from errors import InvalidTransition, OverpaymentRejected, ValidationError
from extensions import db
from models import Invoice, InvoiceStatus, Payment, PaymentKind, PaymentMethod
from services.accounts import account_get_or_404
from services.audit import log_action
from services.invoice import parse_amount, remaining_balance
from services.money import sum_money
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)


def _parse_method(method) -> PaymentMethod:
    try:
        return PaymentMethod(method)
    except ValueError:
        raise ValidationError(
            f"Unknown payment method '{method}'",
            details={"method": method, "allowed": [m.value for m in PaymentMethod]},
        )


def _payment_moment(value, now: datetime.datetime) -> datetime.datetime:
    if value is None:
        return now
    if isinstance(value, datetime.datetime):
        return as_utc(value)
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time.min, tzinfo=timezone.utc)
    raise ValidationError("payment_date must be a date or datetime", details={"payment_date": repr(value)})


def _reconcile(invoice: Invoice, now: datetime.datetime) -> None:
    """Recompute the paid amount from the ledger and derive the stored status."""
    paid = sum_money((p.amount for p in invoice.payments), invoice.currency)
    invoice.paid_amount_cents = paid.cents
    total = invoice.stored_total
    if paid == total:
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = now
    elif paid.is_positive():
        invoice.status = InvoiceStatus.PARTIAL.value
        invoice.paid_at = None
    else:
        invoice.status = InvoiceStatus.SENT.value
        invoice.paid_at = None


def _shift_paid(invoice: Invoice, delta_cents: int) -> bool:
    """Move the cached paid amount by *delta_cents* if it stays within ``[0, total]``.

    Check and write happen in one statement; False means a concurrent
    payment got there first.
    """
    column = Invoice.paid_amount_cents
    if delta_cents >= 0:
        bound = column + delta_cents <= Invoice.total_amount_cents
    else:
        bound = column + delta_cents >= 0
    result = db.session.execute(
        update(Invoice)
        .where(Invoice.id == invoice.id, bound)
        .values(paid_amount_cents=column + delta_cents)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def record_payment(
    account_id: int,
    invoice_id: int,
    amount,
    method,
    payment_date=None,
    *,
    notes: Optional[str] = None,
    reference: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> Invoice:
    """Apply a payment to an issued invoice.

    Raises ``OverpaymentRejected`` when *amount* exceeds the outstanding
    balance; credit notes are never created implicitly.
    """
    now = as_utc(now) or utc_now()
    invoice = account_get_or_404(Invoice, invoice_id, account_id, for_update=True)
    if invoice.status in (InvoiceStatus.DRAFT.value, InvoiceStatus.CANCELLED.value):
        raise InvalidTransition(
            invoice.status, InvoiceStatus.PARTIAL.value,
            "Payments are only accepted on issued invoices",
        )
    money = parse_amount(amount, invoice.currency)
    if not money.is_positive():
        raise ValidationError("Payment amount must be positive", details={"amount": str(money)})
    method = _parse_method(method)

    remaining = remaining_balance(invoice)
    if money > remaining:
        logger.warning(
            "Rejected overpayment of %s on invoice %s (remaining %s)", money, invoice.id, remaining
        )
        raise OverpaymentRejected(invoice.id, money, remaining)
    if not _shift_paid(invoice, money.cents):
        db.session.refresh(invoice)
        remaining = invoice.stored_total - invoice.paid_amount
        logger.warning(
            "Rejected payment of %s on invoice %s after a concurrent update (remaining %s)",
            money, invoice.id, remaining,
        )
        raise OverpaymentRejected(invoice.id, money, remaining)
    db.session.expire(invoice)

    payment = Payment(
        account_id=account_id,
        kind=PaymentKind.PAYMENT.value,
        amount_cents=money.cents,
        currency=invoice.currency,
        method=method.value,
        payment_date=_payment_moment(payment_date, now),
        reference=reference,
        notes=notes,
    )
    invoice.payments.append(payment)
    previous = invoice.status
    _reconcile(invoice, now)
    db.session.flush()
    log_action(
        account_id, "payment", "invoice", invoice.id,
        f"{money} via {method.value}; {previous} -> {invoice.status}",
    )
    logger.info(
        "Recorded payment %s on invoice %s: %s (%s -> %s)",
        payment.id, invoice.id, money, previous, invoice.status,
    )
    return invoice


def record_refund(
    account_id: int,
    invoice_id: int,
    amount,
    method,
    payment_date=None,
    *,
    notes: Optional[str] = None,
    reference: Optional[str] = None,
    now: Optional[datetime.datetime] = None,
) -> Invoice:
    """Reverse part or all of what was paid, as a negative ledger entry.

    The refund is clamped to the amount actually paid.
    """
    now = as_utc(now) or utc_now()
    invoice = account_get_or_404(Invoice, invoice_id, account_id, for_update=True)
    if not invoice.paid_amount_cents:
        raise ValidationError("Invoice has no payments to refund", details={"invoice_id": invoice.id})
    money = parse_amount(amount, invoice.currency)
    if not money.is_positive():
        raise ValidationError("Refund amount must be positive", details={"amount": str(money)})
    method = _parse_method(method)

    refunded = min(money, invoice.paid_amount)
    if not _shift_paid(invoice, -refunded.cents):
        # Another refund landed first; clamp again against the fresh row.
        db.session.refresh(invoice)
        refunded = min(money, invoice.paid_amount)
        if not refunded.is_positive() or not _shift_paid(invoice, -refunded.cents):
            raise ValidationError(
                "Invoice has no payments to refund", details={"invoice_id": invoice.id}
            )
    db.session.expire(invoice)

    payment = Payment(
        account_id=account_id,
        kind=PaymentKind.REFUND.value,
        amount_cents=-refunded.cents,
        currency=invoice.currency,
        method=method.value,
        payment_date=_payment_moment(payment_date, now),
        reference=reference,
        notes=notes,
    )
    invoice.payments.append(payment)
    previous = invoice.status
    _reconcile(invoice, now)
    db.session.flush()
    log_action(
        account_id, "refund", "invoice", invoice.id,
        f"{refunded} via {method.value}; {previous} -> {invoice.status}",
    )
    logger.info(
        "Recorded refund %s on invoice %s: %s (%s -> %s)",
        payment.id, invoice.id, refunded, previous, invoice.status,
    )
    return invoice

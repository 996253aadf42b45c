"""Read-time status derivation.

Stored statuses only change on concrete events (a payment, a gateway webhook,
a user action).  Time-based states such as an expired trial or an overdue
invoice are computed here from the stored row and ``now``, so no background
sweep ever rewrites them.  Nothing in this module touches the session.
"""

from __future__ import annotations

import datetime
import enum

from models import InvoiceStatus, SubscriptionStatus
from utils import as_utc, end_of_day


class SubscriptionDisplayStatus(str, enum.Enum):
    TRIALING = "trialing"
    TRIAL_EXPIRED = "trial_expired"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class InvoiceDisplayStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Stored invoice statuses that still have an open balance.
_OPEN_INVOICE_STATUSES = {
    InvoiceStatus.SENT.value,
    InvoiceStatus.PARTIAL.value,
    InvoiceStatus.OVERDUE.value,
}


def effective_subscription_status(subscription, now: datetime.datetime) -> SubscriptionDisplayStatus:
    status = SubscriptionStatus(subscription.status)
    now = as_utc(now)

    if status == SubscriptionStatus.TRIALING:
        trial_ends_at = as_utc(subscription.trial_ends_at)
        if trial_ends_at is not None and now > trial_ends_at:
            return SubscriptionDisplayStatus.TRIAL_EXPIRED
        return SubscriptionDisplayStatus.TRIALING

    if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
        # Deferred cancellation whose period has lapsed before the
        # gateway reported it.
        period_end = as_utc(subscription.current_period_end)
        if subscription.cancel_at_period_end and period_end is not None and now > period_end:
            return SubscriptionDisplayStatus.CANCELED

    return SubscriptionDisplayStatus(status.value)


def effective_invoice_status(invoice, now: datetime.datetime) -> InvoiceDisplayStatus:
    """Stored status, except an open invoice past its due date reads as overdue.

    The due date is inclusive: an invoice due today becomes overdue tomorrow.
    """
    status = InvoiceStatus(invoice.status)
    if status.value in _OPEN_INVOICE_STATUSES and invoice.due_date is not None:
        if as_utc(now) > end_of_day(invoice.due_date):
            return InvoiceDisplayStatus.OVERDUE
        if status == InvoiceStatus.OVERDUE:
            # Legacy rows flipped by an old sweep; the date no longer says overdue.
            return InvoiceDisplayStatus.PARTIAL if invoice.paid_amount_cents else InvoiceDisplayStatus.SENT
    return InvoiceDisplayStatus(status.value)


def trial_ending_soon(subscription, now: datetime.datetime, days: int) -> bool:
    """True while a trial is running and ends within *days*."""
    if effective_subscription_status(subscription, now) != SubscriptionDisplayStatus.TRIALING:
        return False
    trial_ends_at = as_utc(subscription.trial_ends_at)
    if trial_ends_at is None:
        return False
    return trial_ends_at - as_utc(now) <= datetime.timedelta(days=days)

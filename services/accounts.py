"""Account context and data isolation services."""

from __future__ import annotations

from functools import wraps
from typing import Optional

from flask import g, has_request_context
from sqlalchemy import event

from errors import AccountIsolationError, NotFound
from extensions import db


def get_current_account():
    """Return the active Account object from ``g``, or None."""
    if not has_request_context():
        return None
    return getattr(g, "current_account", None)


def get_current_account_id() -> Optional[int]:
    """Return the active account_id from ``g``, or None."""
    account = get_current_account()
    return account.id if account else None


def require_account() -> int:
    """Return the current account_id or raise ``AccountIsolationError``."""
    account_id = get_current_account_id()
    if account_id is None:
        raise AccountIsolationError("No account selected. Send the X-Account-Id header.")
    return account_id


def account_query(model, account_id: int):
    """Return a query on *model* filtered to *account_id*.

    Usage::

        invoices = account_query(Invoice, account_id).filter_by(status="sent").all()
    """
    return model.query.filter_by(account_id=account_id)


def account_get_or_404(model, obj_id, account_id: int, *, for_update: bool = False):
    """Fetch a single object by PK, verifying it belongs to *account_id*.

    With *for_update* the row is locked (``SELECT ... FOR UPDATE``) for the
    rest of the transaction.
    """
    query = model.query.filter_by(id=obj_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    obj = query.first()
    if obj is None or getattr(obj, "account_id", account_id) != account_id:
        raise NotFound(f"{model.__name__} {obj_id} not found")
    return obj


def _enforce_account_on_flush(session, flush_context):
    """Verify that all new/dirty account-scoped objects match the request's account.

    Services always pass ``account_id`` explicitly; this guard catches
    programming errors that mix two accounts' rows.
    """
    account_id = get_current_account_id()
    if account_id is None:
        # Outside request context (CLI, tests calling services directly)
        return

    for obj in list(session.new) + list(session.dirty):
        obj_account = getattr(obj, "account_id", None)
        if obj_account is not None and obj_account != account_id:
            raise AccountIsolationError(
                f"Cross-account write blocked: {type(obj).__name__} "
                f"has account_id={obj_account}, active account is {account_id}"
            )


def register_account_guards(app):
    """Register the after_flush event listener.  Call once during app init."""
    if not event.contains(db.session, "after_flush", _enforce_account_on_flush):
        event.listen(db.session, "after_flush", _enforce_account_on_flush)


def account_required(f):
    """Decorator that rejects requests without a resolved account."""

    @wraps(f)
    def decorated(*args, **kwargs):
        require_account()
        return f(*args, **kwargs)

    return decorated

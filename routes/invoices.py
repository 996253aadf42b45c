"""Invoice, payment and receivables routes.

Amounts travel as decimal strings (``"50.00"``); JSON floats are refused.
"""

import logging

from flask import Blueprint, jsonify, request

from errors import ValidationError
from extensions import db
from services.accounts import account_required, require_account
from services.invoice import (
    add_item,
    apply_discount,
    cancel_invoice,
    create_invoice,
    finalize_invoice,
    get_invoice,
    invoice_stats,
    invoice_to_dict,
    item_to_dict,
    list_invoices,
    receivables_summary,
    record_fiscal_number,
    remove_item,
    set_tax,
)
from services.payment import record_payment, record_refund
from utils import parse_date, parse_datetime, safe_int, utc_now

logger = logging.getLogger(__name__)

invoices_bp = Blueprint("invoices", __name__, url_prefix="/api")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _required_date(data: dict, key: str):
    value = parse_date(data.get(key))
    if value is None:
        raise ValidationError(f"{key} must be a YYYY-MM-DD date", details={key: data.get(key)})
    return value


def _payment_date(data: dict):
    raw = data.get("payment_date")
    if not raw:
        return None
    value = parse_date(raw) if len(str(raw)) == 10 else parse_datetime(raw)
    if value is None:
        raise ValidationError("payment_date is not a valid date", details={"payment_date": raw})
    return value


def _optional_date_arg(key: str):
    raw = request.args.get(key)
    if not raw:
        return None
    value = parse_date(raw)
    if value is None:
        raise ValidationError(f"{key} must be a YYYY-MM-DD date", details={key: raw})
    return value


def _invoice_response(invoice, status_code=200):
    return jsonify({"invoice": invoice_to_dict(invoice, utc_now())}), status_code


@invoices_bp.route("/invoices", methods=["GET"])
@account_required
def invoices_index():
    account_id = require_account()
    client_id = safe_int(request.args.get("client_id")) or None
    status = request.args.get("status") or None
    date_from = _optional_date_arg("date_from")
    date_to = _optional_date_arg("date_to")
    try:
        invoices = list_invoices(
            account_id, status=status, client_id=client_id, date_from=date_from, date_to=date_to
        )
    except ValueError:
        raise ValidationError(f"Unknown status '{status}'")
    now = utc_now()
    return jsonify({"invoices": [invoice_to_dict(inv, now) for inv in invoices]})


@invoices_bp.route("/invoices", methods=["POST"])
@account_required
def invoices_create():
    data = _json_body()
    client_id = safe_int(data.get("client_id"))
    if not client_id:
        raise ValidationError("client_id is required")
    items = data.get("items") or []
    if not isinstance(items, list):
        raise ValidationError("items must be a list")
    issue_date = parse_date(data.get("issue_date")) if data.get("issue_date") else None
    invoice = create_invoice(
        require_account(),
        client_id,
        _required_date(data, "due_date"),
        items,
        issue_date=issue_date,
        currency=data.get("currency"),
        tax_amount=data.get("tax_amount"),
        notes=data.get("notes"),
    )
    db.session.commit()
    return _invoice_response(invoice, 201)


@invoices_bp.route("/invoices/<int:invoice_id>")
@account_required
def invoices_detail(invoice_id):
    return _invoice_response(get_invoice(require_account(), invoice_id))


@invoices_bp.route("/invoices/<int:invoice_id>/items", methods=["POST"])
@account_required
def invoices_add_item(invoice_id):
    account_id = require_account()
    item = add_item(account_id, invoice_id, _json_body())
    db.session.commit()
    invoice = get_invoice(account_id, invoice_id)
    return jsonify({
        "item": item_to_dict(item, invoice.currency),
        "invoice": invoice_to_dict(invoice, utc_now()),
    }), 201


@invoices_bp.route("/invoices/<int:invoice_id>/items/<int:item_id>", methods=["DELETE"])
@account_required
def invoices_remove_item(invoice_id, item_id):
    invoice = remove_item(require_account(), invoice_id, item_id)
    db.session.commit()
    return _invoice_response(invoice)


@invoices_bp.route("/invoices/<int:invoice_id>/discount", methods=["POST"])
@account_required
def invoices_discount(invoice_id):
    data = _json_body()
    item_id = safe_int(data.get("item_id")) or None
    invoice = apply_discount(require_account(), invoice_id, data.get("percent"), item_id)
    db.session.commit()
    return _invoice_response(invoice)


@invoices_bp.route("/invoices/<int:invoice_id>/tax", methods=["POST"])
@account_required
def invoices_tax(invoice_id):
    invoice = set_tax(require_account(), invoice_id, _json_body().get("amount"))
    db.session.commit()
    return _invoice_response(invoice)


@invoices_bp.route("/invoices/<int:invoice_id>/finalize", methods=["POST"])
@account_required
def invoices_finalize(invoice_id):
    invoice = finalize_invoice(require_account(), invoice_id)
    db.session.commit()
    return _invoice_response(invoice)


@invoices_bp.route("/invoices/<int:invoice_id>/cancel", methods=["POST"])
@account_required
def invoices_cancel(invoice_id):
    reason = (_json_body().get("reason") or "").strip()
    invoice = cancel_invoice(require_account(), invoice_id, reason=reason)
    db.session.commit()
    return _invoice_response(invoice)


@invoices_bp.route("/invoices/<int:invoice_id>/payments", methods=["POST"])
@account_required
def invoices_payment(invoice_id):
    data = _json_body()
    invoice = record_payment(
        require_account(),
        invoice_id,
        data.get("amount"),
        data.get("method"),
        _payment_date(data),
        notes=data.get("notes"),
        reference=data.get("reference"),
    )
    db.session.commit()
    return _invoice_response(invoice, 201)


@invoices_bp.route("/invoices/<int:invoice_id>/refunds", methods=["POST"])
@account_required
def invoices_refund(invoice_id):
    data = _json_body()
    invoice = record_refund(
        require_account(),
        invoice_id,
        data.get("amount"),
        data.get("method"),
        _payment_date(data),
        notes=data.get("notes"),
        reference=data.get("reference"),
    )
    db.session.commit()
    return _invoice_response(invoice, 201)


@invoices_bp.route("/invoices/<int:invoice_id>/fiscal-number", methods=["POST"])
@account_required
def invoices_fiscal_number(invoice_id):
    invoice = record_fiscal_number(
        require_account(), invoice_id, _json_body().get("fiscal_number")
    )
    db.session.commit()
    return _invoice_response(invoice)


@invoices_bp.route("/receivables")
@account_required
def receivables():
    return jsonify(receivables_summary(require_account()))


@invoices_bp.route("/invoices/stats")
@account_required
def invoices_stats():
    stats = invoice_stats(
        require_account(),
        date_from=_optional_date_arg("date_from"),
        date_to=_optional_date_arg("date_to"),
    )
    return jsonify(stats)

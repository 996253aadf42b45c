"""Billing error taxonomy.

Every error carries a stable ``code`` the API layer renders verbatim, so a
client can tell "this invoice is locked" apart from "amount exceeds balance".
Quota denials are *not* here: they are ordinary return values
(see ``services.quota``).
"""

from typing import Any, Optional


class BillingError(Exception):
    """Base exception for all billing-core errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[Any] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(BillingError):
    """Malformed input, e.g. a negative amount or an unknown capability tag."""

    def __init__(self, message: str = "Validation failed", details: Optional[Any] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=422,
            details=details,
        )


class NotFound(BillingError):
    def __init__(self, message: str = "Resource not found", details: Optional[Any] = None):
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
            details=details,
        )


class InvalidTransition(BillingError):
    """A subscription or invoice state change not permitted from the current state."""

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            code="INVALID_TRANSITION",
            message=message or f"Cannot transition from '{current}' to '{target}'",
            status_code=409,
            details={"from": current, "to": target},
        )
        self.current = current
        self.target = target


class InvoiceLocked(BillingError):
    def __init__(self, invoice_id: Optional[int], status: str):
        super().__init__(
            code="INVOICE_LOCKED",
            message=f"Invoice {invoice_id} is '{status}'; items can only change while draft",
            status_code=409,
            details={"invoice_id": invoice_id, "status": status},
        )


class OverpaymentRejected(BillingError):
    def __init__(self, invoice_id: int, amount, remaining):
        super().__init__(
            code="OVERPAYMENT_REJECTED",
            message=f"Payment of {amount} exceeds the outstanding balance {remaining}",
            status_code=409,
            details={
                "invoice_id": invoice_id,
                "amount": str(amount),
                "remaining": str(remaining),
            },
        )


class CannotCancelPaidInvoice(BillingError):
    def __init__(self, invoice_id: int, paid_amount):
        super().__init__(
            code="CANNOT_CANCEL_PAID_INVOICE",
            message=(
                f"Invoice {invoice_id} has {paid_amount} paid; "
                "refund the payments before cancelling"
            ),
            status_code=409,
            details={"invoice_id": invoice_id, "paid_amount": str(paid_amount)},
        )


class AccountIsolationError(BillingError):
    """Raised when a cross-account read or write is attempted."""

    def __init__(self, message: str = "No account selected", details: Optional[Any] = None):
        super().__init__(
            code="ACCOUNT_REQUIRED",
            message=message,
            status_code=403,
            details=details,
        )


class MoneyArithmeticError(BillingError, ArithmeticError):
    """Overflow, currency mismatch or division by zero in Money arithmetic."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(
            code="MONEY_ARITHMETIC",
            message=message,
            status_code=422,
            details=details,
        )

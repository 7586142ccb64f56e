"""Failure taxonomy of the order and payment pipeline.

Every error carries the HTTP status it maps to and a message that is safe to
show to the caller. Validation and business-rule errors are raised before any
mutation; ``TransactionFailed`` is raised after a rollback.
"""

from typing import Any, Dict, Optional


class CheckoutError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


# Validation

class NoItems(CheckoutError):
    def __init__(self):
        super().__init__("No items in order")


class MissingPaymentDetails(CheckoutError):
    def __init__(self, message: str = "MPESA payment requires phone number and transaction reference"):
        super().__init__(message)


class InvalidPhoneFormat(CheckoutError):
    def __init__(self):
        super().__init__(
            "Invalid phone number format. Use formats like 0712345678, 254712345678, or +254712345678"
        )


# Business rules

class ProductUnavailable(CheckoutError):
    def __init__(self, product_id: Any):
        super().__init__(f"Product {product_id} is unavailable")
        self.product_id = product_id


class InsufficientStock(CheckoutError):
    def __init__(self, product_name: str):
        super().__init__(f"Insufficient stock for {product_name}")
        self.product_name = product_name


class VoucherError(CheckoutError):
    """Base for voucher failures; ``scope`` is "product" or "delivery"."""

    def __init__(self, message: str, scope: str = "product"):
        super().__init__(message)
        self.scope = scope


class InvalidVoucher(VoucherError):
    def __init__(self, scope: str = "product", reason: Optional[str] = None):
        default = "Invalid voucher" if scope == "product" else "Invalid delivery voucher"
        super().__init__(reason or default, scope)


class VoucherNotApplicable(VoucherError):
    def __init__(self, scope: str = "product"):
        super().__init__("Voucher not applicable to cart items", scope)


class MinimumOrderNotMet(VoucherError):
    def __init__(self, minimum: Any, scope: str = "product"):
        super().__init__(f"Minimum order amount is Ksh {minimum}", scope)
        self.minimum = minimum


class AmountMismatch(CheckoutError):
    def __init__(self, field: str):
        super().__init__("Client/server mismatch in amounts")
        self.field = field


class PaymentAlreadyExists(CheckoutError):
    def __init__(self):
        super().__init__("Payment already exists for this order")


class InvalidOrderState(CheckoutError):
    pass


# Access

class Unauthorized(CheckoutError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class Forbidden(CheckoutError):
    status_code = 403

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class OrderNotFound(CheckoutError):
    status_code = 404

    def __init__(self):
        super().__init__("Order not found")


class PaymentNotFound(CheckoutError):
    status_code = 404

    def __init__(self, message: str = "Payment not found"):
        super().__init__(message)


# Upstream and internal

class GatewayError(CheckoutError):
    """Error reported by (or while talking to) the mobile-money gateway.

    ``message`` is the provider text and is only logged; callers show
    ``customer_message``.
    """

    def __init__(
        self,
        message: str,
        code: str,
        customer_message: str,
        field: Optional[str] = None,
        status_code: int = 400,
    ):
        super().__init__(message, status_code)
        self.code = code
        self.customer_message = customer_message
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.customer_message, "code": self.code, "field": self.field}


class TransactionFailed(CheckoutError):
    status_code = 500

    def __init__(self, message: str = "Failed to create order", details: Optional[str] = None):
        super().__init__(message)
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body

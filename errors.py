"""
Error taxonomy for the order workflow.

Every class carries the HTTP status it maps to; the API layer renders them as
``{"message": ...}`` responses.
"""


class ShopError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ShopError):
    """Malformed or missing input."""
    status_code = 400


class NotFound(ShopError):
    status_code = 404


class InsufficientStock(ShopError):
    status_code = 400

    def __init__(self, product_name: str):
        super().__init__(f"Insufficient stock for {product_name}")
        self.product_name = product_name


class PaymentVerificationFailed(ShopError):
    status_code = 400

    def __init__(self, message: str = "Payment verification failed"):
        super().__init__(message)


class PaymentNotCompleted(ShopError):
    status_code = 400

    def __init__(self, message: str = "Payment not completed"):
        super().__init__(message)


class AccessDenied(ShopError):
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class InvalidStateError(ShopError):
    status_code = 400

"""
Payment error taxonomy.

Every error carries the HTTP status and machine-readable code used by the
API exception handler in main.py.
"""
from typing import Optional


class PaymentError(Exception):
    status_code: int = 400
    code: str = "payment_error"

    def __init__(self, message: Optional[str] = None, **context):
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)


class AdapterConfigError(PaymentError):
    """Provider credentials are missing or invalid."""
    status_code = 503
    code = "adapter_config_error"


class ProviderUnavailable(PaymentError):
    """The payment provider could not be reached; retry later."""
    status_code = 503
    code = "provider_unavailable"


class ProviderError(PaymentError):
    """The payment provider rejected the request."""
    status_code = 502
    code = "provider_error"


class SignatureInvalid(PaymentError):
    """Provider signature verification failed."""
    status_code = 400
    code = "signature_invalid"


class AmountMismatch(PaymentError):
    """Amount does not match the expected order or intent amount."""
    status_code = 409
    code = "amount_mismatch"


class UnknownIntent(PaymentError):
    """No payment intent matches the reference."""
    status_code = 404
    code = "unknown_intent"


class AlreadyTerminal(PaymentError):
    """The payment intent is already in a terminal state."""
    status_code = 409
    code = "already_terminal"


class UnknownOrder(PaymentError):
    """Order not found."""
    status_code = 404
    code = "unknown_order"


class UnsupportedMethod(PaymentError):
    """The payment method has no gateway adapter."""
    status_code = 400
    code = "unsupported_method"


class InvalidPaymentRequest(PaymentError):
    """The payment request is invalid."""
    status_code = 422
    code = "invalid_payment_request"


class RefundNotAllowed(PaymentError):
    """The payment is not eligible for this refund."""
    status_code = 409
    code = "refund_not_allowed"

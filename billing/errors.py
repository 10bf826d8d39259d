class BillingError(Exception):
    """Base class for every error raised by the billing core.

    ``detail`` is safe to show to operators; ``context`` carries extra
    diagnostic fields for the log record.
    """

    def __init__(self, detail: str = "", **context):
        super().__init__(detail)
        self.detail = detail
        self.context = context


class AuthFailure(BillingError):
    pass


class TransportError(BillingError):
    def __init__(self, detail: str = "", status_code: int = None, **context):
        super().__init__(detail, status_code=status_code, **context)
        self.status_code = status_code


class StatusUnavailable(TransportError):
    pass


class InvalidResponse(BillingError):
    pass


class MalformedCallback(BillingError):
    pass


class ValidationError(BillingError):
    pass


class NotFound(BillingError):
    pass


class PersistenceError(BillingError):
    pass


class PaymentInitiationError(BillingError):
    """Payment could not be started. The cause holds the gateway detail."""

    public_message = "Payment could not be started"


class SubscriptionConflict(ValidationError):
    """The user already holds an active subscription to the product."""


def embedded_error(data):
    """Pesapal reports some failures inside a 2xx body as a non-null ``error``."""
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        # status responses carry an all-null error object on success
        return error.get("message") or error.get("code") or error.get("error_type")
    return str(error)

"""
Error taxonomy for the paywall API.

Every error carries the HTTP status and machine-readable code it is
rendered with by the exception handler in main.py.
"""


class PaywallError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "An error occurred"):
        super().__init__(message)
        self.message = message


class ValidationError(PaywallError):
    """Missing or malformed input. Not retryable."""
    status_code = 400
    code = "validation_error"


class AuthenticationError(PaywallError):
    status_code = 401
    code = "unauthorized"


class NotFoundError(PaywallError):
    """Unknown email, customer or invoice."""
    status_code = 404
    code = "not_found"


class SignatureError(PaywallError):
    """Webhook signature verification failed. Terminal for that delivery."""
    status_code = 400
    code = "invalid_signature"


class UpstreamError(PaywallError):
    """Stripe or the record store failed. Safe to retry."""
    status_code = 502
    code = "upstream_error"


class ConfigurationError(PaywallError):
    """Required price, secret or key configuration is missing."""
    status_code = 500
    code = "configuration_error"

"""Error taxonomy for the ledger and its HTTP boundary.

Services raise these; ``tokenledger.app`` maps them to JSON responses.
"""


class LedgerError(Exception):
    """Base class. ``status_code`` and ``code`` describe the HTTP rendering."""

    status_code = 500
    code = "ledger_error"
    message = "Ledger operation failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)

    @property
    def detail(self) -> str:
        return str(self)


class Unauthorized(LedgerError):
    status_code = 401
    code = "unauthorized"
    message = "Not authenticated"


class ValidationError(LedgerError):
    status_code = 400
    code = "validation_error"
    message = "Invalid input"


class InvalidAmount(ValidationError):
    code = "invalid_amount"
    message = "Token amount out of range"


class InsufficientTokens(LedgerError):
    status_code = 402
    code = "insufficient_tokens"
    message = "No tokens remaining"


class NotProvisioned(LedgerError):
    status_code = 404
    code = "not_provisioned"
    message = "User has no subscription record"


class NotFound(LedgerError):
    status_code = 404
    code = "not_found"
    message = "Not found"


class AlreadySubscribed(LedgerError):
    status_code = 409
    code = "already_subscribed"
    message = "User already has an active Stripe subscription"


class InvalidSignature(LedgerError):
    status_code = 400
    code = "invalid_signature"
    message = "Invalid signature"


class StoreFailure(LedgerError):
    status_code = 503
    code = "store_failure"
    message = "Database unavailable, try again"


class BillingError(LedgerError):
    status_code = 502
    code = "billing_error"
    message = "Payment provider request failed"


class WebhookProcessingError(LedgerError):
    status_code = 500
    code = "webhook_processing_failed"
    message = "Webhook processing failed"

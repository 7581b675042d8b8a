"""Billing error taxonomy shared by the reconciler, ledger and spend gate."""


class BillingError(Exception):
    """Base class for credit and subscription errors."""

    status_code = 500


class AuthenticationError(BillingError):
    """Webhook credential missing or wrong."""

    status_code = 401


class ValidationError(BillingError):
    """Request body could not be parsed or is missing required fields."""

    status_code = 400


class WebhookConfigurationError(BillingError):
    """Webhook secret is not configured on this server."""

    status_code = 500


class UnresolvableAccountError(BillingError):
    """Event carries no identifier that maps to a real account."""


class AccountNotFoundError(BillingError):
    """No account row exists for the resolved user id."""

    status_code = 404

    def __init__(self, user_id: str):
        super().__init__(f"Account {user_id} not found.")
        self.user_id = user_id


class AccountConflictError(BillingError):
    """Account cannot be created because its email belongs to another account."""

    status_code = 409


class DuplicateEventError(BillingError):
    """Webhook event id was already processed."""

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} already processed.")
        self.event_id = event_id


class InsufficientCreditError(BillingError):
    status_code = 402

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}. "
            "Purchase more credits to continue."
        )
        self.required = required
        self.available = available


class PersistenceError(BillingError):
    """Database transaction failed; the caller may retry."""

    status_code = 500


class StylizeError(BillingError):
    """External stylization provider failed or returned an unusable response."""

    status_code = 502

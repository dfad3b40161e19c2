"""
Webhook reconciliation errors.

Each error says whether Stripe should redeliver the event (retryable) and
which HTTP status the webhook endpoint answers with.
"""


class WebhookError(Exception):
    """Base class for errors raised while reconciling a Stripe event."""

    status_code = 400
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SignatureVerificationError(WebhookError):
    """Payload could not be authenticated or parsed. Nothing was processed."""


class ValidationError(WebhookError):
    """Event is missing a field required to reconcile it."""


class IdentityResolutionError(WebhookError):
    """No existing user could be matched to a checkout."""


class DuplicateSubscriptionError(WebhookError):
    """Customer already has a live subscription. Reported as 'blocked', not as a failure."""

    status_code = 200

    def __init__(self, customer_id: str, subscription_id: str, existing_subscription_id: str):
        self.customer_id = customer_id
        self.subscription_id = subscription_id
        self.existing_subscription_id = existing_subscription_id
        super().__init__('Customer already has an active subscription')


class PersistenceError(WebhookError):
    """Subscription store read or write failed."""

    status_code = 500
    retryable = True


class ProviderError(WebhookError):
    """Call to the Stripe API failed."""

    status_code = 500
    retryable = True

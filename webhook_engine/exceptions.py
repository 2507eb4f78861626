"""
Engine exceptions.

Delivery failures are never raised to event producers; these only cover
configuration and operator lookups.
"""
from pydantic import ValidationError


class WebhookEngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(WebhookEngineError):
    """Subscription configuration is invalid and was rejected at save time."""

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def from_validation_error(cls, exc: ValidationError) -> "ConfigurationError":
        errors = exc.errors(include_url=False, include_context=False)
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "root" for err in errors)
        return cls(f"Invalid webhook configuration: {fields}", errors=errors)


class SubscriptionNotFoundError(WebhookEngineError):
    """No subscription is registered under the given id."""

    def __init__(self, subscription_id: str):
        super().__init__(f"Webhook not found: {subscription_id}")
        self.subscription_id = subscription_id


class EventLogNotFoundError(WebhookEngineError):
    """The subscription holds no event log with the given event id."""

    def __init__(self, subscription_id: str, event_id: str):
        super().__init__(f"Event log not found: {event_id}")
        self.subscription_id = subscription_id
        self.event_id = event_id

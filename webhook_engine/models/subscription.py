"""
Webhook subscription configuration.

A Subscription is the operator-supplied, read-mostly view of one webhook.
Engine-owned mutable state (health, statistics, rate window, event logs)
lives in webhook_engine.services.registry.SubscriptionState.
"""
import enum
import ipaddress
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from webhook_engine.config import settings
from webhook_engine.exceptions import ConfigurationError
from webhook_engine.models.event import utcnow


class HttpMethod(str, enum.Enum):
    """Outbound HTTP methods a webhook may use."""
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"


class ContentType(str, enum.Enum):
    """Body encodings supported by the dispatcher."""
    JSON = "application/json"
    FORM = "application/x-www-form-urlencoded"


class RetryCondition(str, enum.Enum):
    """Failure classes a retry policy can opt into."""
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "5xx"
    TOO_MANY_REQUESTS = "429"


class AuthType(str, enum.Enum):
    """Authentication scheme presented to the subscriber endpoint."""
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    API_KEY = "api_key"
    OAUTH2 = "oauth2"


MAX_RETRY_DELAY_MS = 24 * 60 * 60 * 1000


class RetryPolicy(BaseModel):
    """Exponential backoff retry policy."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_ms: int = Field(default=1000, ge=100, le=MAX_RETRY_DELAY_MS)
    backoff_multiplier: float = Field(default=2.0, ge=1, le=10)
    # no single wait grows past this, however many attempts have failed
    max_delay_ms: int = Field(default=MAX_RETRY_DELAY_MS, ge=100, le=MAX_RETRY_DELAY_MS)
    retry_on: list[RetryCondition] = Field(default_factory=list)

    def backoff_delay(self, failed_attempt: int) -> timedelta:
        """
        Delay before the retry that follows attempt number `failed_attempt`.

        The first retry waits base_delay, each later one multiplies by
        backoff_multiplier: base_delay * multiplier ** (failed_attempt - 1),
        capped at max_delay_ms.
        """
        exponent = max(failed_attempt, 1) - 1
        try:
            delay_ms = self.base_delay_ms * (self.backoff_multiplier ** exponent)
        except OverflowError:
            delay_ms = self.max_delay_ms
        return timedelta(milliseconds=min(delay_ms, self.max_delay_ms))

    def allows_retry(self, condition: Optional[RetryCondition]) -> bool:
        """Whether a failure of the given class may be retried. An empty retry_on retries every failure."""
        if not self.enabled:
            return False
        if not self.retry_on:
            return True
        return condition in self.retry_on


class Filters(BaseModel):
    """Entity allow-lists, tags and a data predicate."""
    model_config = ConfigDict(frozen=True)

    document_ids: list[str] = Field(default_factory=list)
    folder_ids: list[str] = Field(default_factory=list)
    user_ids: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    # dotted path into event data -> expected value (a list means "one of")
    conditions: dict[str, Any] = Field(default_factory=dict)


class Transform(BaseModel):
    """Outbound payload transformation rules."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    exclude_fields: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    include_metadata: bool = True


class RateLimitPolicy(BaseModel):
    """Fixed-window rate limit. The window itself is engine-owned state."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    max_requests: Optional[int] = Field(default=None, ge=1)
    window_seconds: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _require_limits_when_enabled(self):
        if self.enabled and (self.max_requests is None or self.window_seconds is None):
            raise ValueError("max_requests and window_seconds are required when rate limiting is enabled")
        return self


class SecurityOptions(BaseModel):
    """TLS, source-IP and authentication options for outbound calls."""
    model_config = ConfigDict(frozen=True)

    verify_tls: bool = True
    allowed_ips: list[str] = Field(default_factory=list)
    auth_type: AuthType = AuthType.NONE
    auth_credentials: dict[str, str] = Field(default_factory=dict)

    @field_validator("allowed_ips")
    @classmethod
    def _validate_networks(cls, value: list[str]) -> list[str]:
        for entry in value:
            ipaddress.ip_network(entry, strict=False)
        return value

    @model_validator(mode="after")
    def _require_credentials(self):
        required = {
            AuthType.BASIC: ("username", "password"),
            AuthType.BEARER: ("token",),
            AuthType.OAUTH2: ("token",),
            AuthType.API_KEY: ("key",),
        }.get(self.auth_type, ())
        missing = [name for name in required if not self.auth_credentials.get(name)]
        if missing:
            raise ValueError(f"auth_credentials missing {', '.join(missing)} for {self.auth_type.value}")
        return self

    def networks(self) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
        return [ipaddress.ip_network(entry, strict=False) for entry in self.allowed_ips]


class Subscription(BaseModel):
    """
    One registered webhook.

    Immutable: operators replace the whole config on update, so every
    delivery sees a consistent snapshot.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workspace_id: str
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    url: str
    method: HttpMethod = HttpMethod.POST
    events: list[str] = Field(min_length=1)
    secret: str = Field(default_factory=lambda: secrets.token_hex(32), min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)
    content_type: ContentType = ContentType.JSON
    timeout_seconds: float = Field(default=30.0, ge=1, le=60)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    filters: Filters = Field(default_factory=Filters)
    transform: Transform = Field(default_factory=Transform)
    rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    security: SecurityOptions = Field(default_factory=SecurityOptions)
    auto_disable_threshold: int = Field(
        default_factory=lambda: settings.WEBHOOK_AUTO_DISABLE_THRESHOLD, ge=1
    )
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        value = value.strip()
        try:
            url = httpx.URL(value)
        except httpx.InvalidURL as exc:
            raise ValueError(f"invalid URL: {exc}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError("URL must be a valid HTTP or HTTPS URL")
        return value

    @field_validator("events")
    @classmethod
    def _dedupe_events(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @classmethod
    def from_config(cls, data: dict[str, Any]) -> "Subscription":
        """Validate operator input, raising ConfigurationError when malformed."""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError.from_validation_error(exc) from exc

    def updated(self, changes: dict[str, Any]) -> "Subscription":
        """Return a new validated config with `changes` applied."""
        data = self.model_dump()
        data.update(changes)
        data["id"] = self.id
        data["created_at"] = self.created_at
        return Subscription.from_config(data)

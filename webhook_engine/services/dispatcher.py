"""
Webhook Dispatcher

Performs one signed outbound HTTP call per invocation and captures the
result as a DeliveryAttempt. Never raises for delivery failures.
"""
import asyncio
import base64
import hashlib
import hmac
import ipaddress
import socket
import time
from typing import Awaitable, Callable, Optional

import httpx
import structlog

from webhook_engine.config import settings
from webhook_engine.models.event_log import AttemptOutcome, DeliveryAttempt, EventLog
from webhook_engine.models.event import utcnow
from webhook_engine.models.subscription import AuthType, RetryCondition, Subscription

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Signature"
REDACTED = "[redacted]"
MAX_LOGGED_HEADERS = 50
MAX_LOGGED_HEADER_VALUE = 256

Resolver = Callable[[str, int], Awaitable[list[str]]]


def generate_webhook_signature(body: bytes, secret: str) -> str:
    """Generate HMAC-SHA256 hex signature for the exact request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()


def verify_webhook_signature(body: bytes, secret: str, signature: str) -> bool:
    """Constant-time check a receiver can use against X-Signature."""
    return hmac.compare_digest(generate_webhook_signature(body, secret), signature)


async def resolve_host(host: str, port: int) -> list[str]:
    """Resolve a hostname to the addresses a connection could use."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return sorted({info[4][0] for info in infos})


def _auth_headers(subscription: Subscription) -> dict[str, str]:
    security = subscription.security
    creds = security.auth_credentials
    if security.auth_type is AuthType.BASIC:
        token = base64.b64encode(f"{creds['username']}:{creds['password']}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}
    if security.auth_type in (AuthType.BEARER, AuthType.OAUTH2):
        return {"Authorization": f"Bearer {creds['token']}"}
    if security.auth_type is AuthType.API_KEY:
        return {creds.get("header", "X-API-Key"): creds["key"]}
    return {}


def _truncate_headers(headers, redact: tuple[str, ...] = ()) -> dict[str, str]:
    redacted = {name.lower() for name in redact}
    result = {}
    for name, value in list(headers.items())[:MAX_LOGGED_HEADERS]:
        if name.lower() in redacted:
            value = REDACTED
        result[name] = value[:MAX_LOGGED_HEADER_VALUE]
    return result


def _condition_for_status(status_code: int) -> Optional[RetryCondition]:
    if status_code == 429:
        return RetryCondition.TOO_MANY_REQUESTS
    if status_code >= 500:
        return RetryCondition.SERVER_ERROR
    return None


class Dispatcher:
    """
    Outbound HTTP client for webhook deliveries.

    Keeps one pooled httpx.AsyncClient per TLS verification mode.
    """

    def __init__(
        self,
        *,
        max_logged_body_bytes: int = settings.WEBHOOK_MAX_LOGGED_BODY_BYTES,
        resolver: Optional[Resolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_logged_body_bytes = max_logged_body_bytes
        self._resolver = resolver or resolve_host
        self._transport = transport
        self._clients: dict[bool, httpx.AsyncClient] = {}
        self.user_agent = f"{settings.APP_NAME}-Webhooks/{settings.APP_VERSION}"

    def _client(self, verify: bool) -> httpx.AsyncClient:
        client = self._clients.get(verify)
        if client is None:
            client = httpx.AsyncClient(verify=verify, transport=self._transport, follow_redirects=False)
            self._clients[verify] = client
        return client

    async def aclose(self) -> None:
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.aclose()

    def build_headers(self, subscription: Subscription, log: EventLog, attempt_number: int) -> dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        headers.update(subscription.headers)
        headers.update(_auth_headers(subscription))
        headers.update({
            "Content-Type": subscription.content_type.value,
            SIGNATURE_HEADER: generate_webhook_signature(log.body, subscription.secret),
            "X-Webhook-Id": subscription.id,
            "X-Webhook-Event": log.event_type,
            "X-Webhook-Event-Id": log.event_id,
            "X-Webhook-Attempt": str(attempt_number),
        })
        return headers

    def _redacted_headers(self, subscription: Subscription, headers: dict[str, str]) -> dict[str, str]:
        secret_headers = [SIGNATURE_HEADER, "Authorization"] + list(_auth_headers(subscription))
        return _truncate_headers(headers, redact=tuple(secret_headers))

    async def _vet_target(self, subscription: Subscription) -> tuple[Optional[str], Optional[str]]:
        """
        Check the target against the IP allow-list.

        Returns (error, address). The address is the vetted IP the
        connection must be pinned to, or None when no allow-list applies.
        """
        networks = subscription.security.networks()
        if not networks:
            return None, None
        url = httpx.URL(subscription.url)
        port = url.port or (443 if url.scheme == "https" else 80)
        try:
            addresses = [str(ipaddress.ip_address(url.host))]
        except ValueError:
            addresses = await self._resolver(url.host, port)
        if not addresses:
            return f"{url.host} did not resolve", None
        for address in addresses:
            ip = ipaddress.ip_address(address)
            if not any(ip in network for network in networks if network.version == ip.version):
                return f"{address} is not in the allowed IP list", None
        return None, addresses[0]

    async def _read_body(self, response: httpx.Response) -> str:
        """Read at most max_logged_body_bytes of the body; the rest is never buffered."""
        limit = self.max_logged_body_bytes
        body = bytearray()
        if limit > 0:
            async for chunk in response.aiter_bytes():
                body.extend(chunk[:limit - len(body)])
                if len(body) >= limit:
                    break
        try:
            return body.decode(response.charset_encoding or "utf-8", errors="replace")
        except LookupError:
            return body.decode("utf-8", errors="replace")

    async def dispatch(self, subscription: Subscription, log: EventLog, attempt_number: int) -> DeliveryAttempt:
        """
        Send the precomputed body once.

        Returns a DeliveryAttempt classified as success (2xx), timeout, or
        failed (non-2xx, connection error, blocked address).
        """
        log_ctx = logger.bind(
            subscription_id=subscription.id,
            event_id=log.event_id,
            attempt=attempt_number,
        )
        headers = self.build_headers(subscription, log, attempt_number)
        logged_headers = self._redacted_headers(subscription, headers)
        started_at = utcnow()
        start = time.perf_counter()

        def elapsed_ms() -> float:
            return round((time.perf_counter() - start) * 1000, 2)

        try:
            blocked, pinned = await self._vet_target(subscription)
        except OSError as exc:
            log_ctx.warning("webhook_resolve_failed", error=str(exc))
            return DeliveryAttempt(
                attempt_number=attempt_number,
                timestamp=started_at,
                status=AttemptOutcome.FAILED,
                response_time_ms=elapsed_ms(),
                request_headers=logged_headers,
                error=f"DNS resolution failed: {exc}",
                error_code="network_error",
                retry_condition=RetryCondition.NETWORK_ERROR,
            )
        if blocked:
            log_ctx.warning("webhook_ip_blocked", error=blocked)
            return DeliveryAttempt(
                attempt_number=attempt_number,
                timestamp=started_at,
                status=AttemptOutcome.FAILED,
                response_time_ms=elapsed_ms(),
                request_headers=logged_headers,
                error=blocked,
                error_code="ip_not_allowed",
                retryable=False,
            )

        url = httpx.URL(subscription.url)
        extensions = {}
        if pinned is not None and url.host != pinned:
            # connect to the vetted address; Host and SNI keep the original name
            headers["Host"] = url.netloc.decode("ascii")
            extensions["sni_hostname"] = url.host
            url = url.copy_with(host=pinned)

        client = self._client(subscription.security.verify_tls)
        try:
            async with client.stream(
                subscription.method.value,
                url,
                content=log.body,
                headers=headers,
                timeout=subscription.timeout_seconds,
                extensions=extensions,
            ) as response:
                body_text = await self._read_body(response)
        except httpx.TimeoutException as exc:
            log_ctx.warning("webhook_timeout", timeout_s=subscription.timeout_seconds)
            return DeliveryAttempt(
                attempt_number=attempt_number,
                timestamp=started_at,
                status=AttemptOutcome.TIMEOUT,
                response_time_ms=elapsed_ms(),
                request_headers=logged_headers,
                error=str(exc) or "request timed out",
                error_code="timeout",
                retry_condition=RetryCondition.TIMEOUT,
            )
        except httpx.HTTPError as exc:
            log_ctx.warning("webhook_transport_error", error=str(exc))
            return DeliveryAttempt(
                attempt_number=attempt_number,
                timestamp=started_at,
                status=AttemptOutcome.FAILED,
                response_time_ms=elapsed_ms(),
                request_headers=logged_headers,
                error=str(exc) or exc.__class__.__name__,
                error_code="network_error",
                retry_condition=RetryCondition.NETWORK_ERROR,
            )

        latency = elapsed_ms()
        response_headers = _truncate_headers(response.headers)

        if 200 <= response.status_code < 300:
            log_ctx.info("webhook_delivered", status_code=response.status_code, duration_ms=latency)
            return DeliveryAttempt(
                attempt_number=attempt_number,
                timestamp=started_at,
                status=AttemptOutcome.SUCCESS,
                status_code=response.status_code,
                response_time_ms=latency,
                request_headers=logged_headers,
                response_headers=response_headers,
                response_body=body_text,
            )

        log_ctx.warning("webhook_rejected", status_code=response.status_code, duration_ms=latency)
        return DeliveryAttempt(
            attempt_number=attempt_number,
            timestamp=started_at,
            status=AttemptOutcome.FAILED,
            status_code=response.status_code,
            response_time_ms=latency,
            request_headers=logged_headers,
            response_headers=response_headers,
            response_body=body_text,
            error=f"HTTP {response.status_code}",
            error_code="http_error",
            retry_condition=_condition_for_status(response.status_code),
        )

"""
Event Filter & Transformer

Decides whether an event is eligible for a webhook and builds the exact
body bytes that will be signed and sent on every attempt.
"""
import copy
import json
from datetime import datetime
from typing import Any, NamedTuple, Optional
from urllib.parse import urlencode

from webhook_engine.models.event import DomainEvent
from webhook_engine.models.subscription import ContentType, Subscription


class Eligibility(NamedTuple):
    """Non-error outcome of the eligibility check."""
    eligible: bool
    reason: Optional[str] = None


ELIGIBLE = Eligibility(True)

_MISSING = object()


def _lookup(data: dict[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _matches_conditions(conditions: dict[str, Any], data: dict[str, Any]) -> bool:
    for path, expected in conditions.items():
        actual = _lookup(data, path)
        if actual is _MISSING:
            return False
        if isinstance(expected, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def check_eligibility(
    subscription: Subscription,
    event: DomainEvent,
    *,
    is_active: bool,
    apply_filters: bool = True,
) -> Eligibility:
    """
    Run the eligibility checks in order, stopping at the first failure.

    Order: active, subscribed event type, entity allow-lists, tags,
    data conditions. Rate limiting is applied separately by the caller.
    With apply_filters=False (operator test events) only activity is checked.
    """
    if not is_active:
        return Eligibility(False, "webhook is not active")

    if not apply_filters:
        return ELIGIBLE

    if event.type not in subscription.events:
        return Eligibility(False, "event type not subscribed")

    filters = subscription.filters
    refs = event.entity_refs
    if filters.document_ids and refs.document_id not in filters.document_ids:
        return Eligibility(False, "document not in filter")
    if filters.folder_ids and refs.folder_id not in filters.folder_ids:
        return Eligibility(False, "folder not in filter")
    if filters.user_ids and refs.user_id not in filters.user_ids:
        return Eligibility(False, "user not in filter")

    if filters.tags and not set(filters.tags).intersection(event.tags):
        return Eligibility(False, "tags not in filter")

    if filters.conditions and not _matches_conditions(filters.conditions, event.data):
        return Eligibility(False, "conditions not met")

    return ELIGIBLE


def _remove_field(payload: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    parent: Any = payload
    for part in parts[:-1]:
        if not isinstance(parent, dict):
            return
        parent = parent.get(part)
    if isinstance(parent, dict):
        parent.pop(parts[-1], None)


def transform_payload(
    subscription: Subscription,
    event: DomainEvent,
    *,
    now: datetime,
) -> dict[str, Any]:
    """Build the outbound payload from the event data."""
    payload = copy.deepcopy(event.data)
    rules = subscription.transform
    if not rules.enabled:
        return payload

    for field in rules.exclude_fields:
        _remove_field(payload, field)

    if rules.custom_fields:
        payload.update(copy.deepcopy(rules.custom_fields))

    if rules.include_metadata:
        payload["_webhook"] = {
            "id": subscription.id,
            "name": subscription.name,
            "timestamp": now.isoformat(),
        }

    return payload


def encode_body(payload: dict[str, Any], content_type: ContentType) -> bytes:
    """
    Serialize the payload once.

    The result is stored on the EventLog and reused for every retry so the
    signature stays valid across attempts.
    """
    document = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
    if content_type is ContentType.FORM:
        return urlencode({"payload": document}).encode("utf-8")
    return document.encode("utf-8")

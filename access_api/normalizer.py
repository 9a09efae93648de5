"""Webhook payload normalization.

Each provider payload is parsed into a pydantic model for the shapes we know
about, then reduced to the identifiers the pipeline needs: who the event is
for, which event it is, and what kind of event it is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger("access_api.normalizer")

ANONYMOUS_ID_PREFIX = "$RCAnonymousID:"
TRANSFER_EVENT = "TRANSFER"
UNKNOWN_EVENT = "UNKNOWN"

IGNORED_TRANSFER_WITHOUT_USER = "transfer_without_app_user_id"
IGNORED_ANONYMOUS_USER = "anonymous_app_user_id"
IGNORED_UNRECOGNIZED = "unrecognized_payload"
ERROR_MISSING_USER = "missing_app_user_id"


# =============================================================================
# REVENUECAT PAYLOAD MODELS
# =============================================================================

class _Loose(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class RevenueCatSubscriber(_Loose):
    app_user_id: Any = None
    original_app_user_id: Any = None
    aliases: Any = None
    subscriber_attributes: Optional[Dict[str, Any]] = None


class RevenueCatTransaction(_Loose):
    product_id: Optional[str] = None
    quantity: Any = None
    purchase_date_ms: Any = None


class RevenueCatEvent(_Loose):
    id: Any = None
    event_id: Any = None
    webhook_id: Any = None
    transaction_id: Any = None
    type: Optional[str] = None
    event_type: Optional[str] = None
    app_user_id: Any = None
    original_app_user_id: Any = None
    aliases: Any = None
    transferred_from: Any = None
    transferred_to: Any = None
    new_app_user_id: Any = None
    product_id: Optional[str] = None
    product_identifier: Optional[str] = Field(default=None, alias="productIdentifier")
    subscriber: Optional[RevenueCatSubscriber] = None
    subscriber_attributes: Optional[Dict[str, Any]] = None
    transaction: Optional[RevenueCatTransaction] = None


class RevenueCatWebhook(_Loose):
    api_version: Optional[str] = None
    event: Optional[RevenueCatEvent] = None
    subscriber: Optional[RevenueCatSubscriber] = None
    subscriber_attributes: Optional[Dict[str, Any]] = None
    app_user_id: Any = None
    original_app_user_id: Any = None
    aliases: Any = None


_EVENT_MARKER_FIELDS = ("type", "event_type", "id", "app_user_id")


@dataclass(frozen=True)
class NormalizedEvent:
    event_type: str
    event_id: Optional[str] = None
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    transfer_from: Optional[str] = None
    transfer_to: Optional[str] = None
    ignored_reason: Optional[str] = None
    error_reason: Optional[str] = None

    @property
    def is_transfer(self) -> bool:
        return self.event_type == TRANSFER_EVENT

    @property
    def actionable(self) -> bool:
        return bool(self.user_id) and not self.ignored_reason and not self.error_reason


def _coerce_user_id(candidate: Any) -> Optional[str]:
    if isinstance(candidate, str):
        trimmed = candidate.strip()
        return trimmed or None
    if isinstance(candidate, (list, tuple)):
        for item in candidate:
            resolved = _coerce_user_id(item)
            if resolved:
                return resolved
    return None


def _first_user_id(*candidates: Any) -> Optional[str]:
    for candidate in candidates:
        resolved = _coerce_user_id(candidate)
        if resolved:
            return resolved
    return None


def _string_aliases(*sources: Any) -> List[str]:
    aliases: List[str] = []
    for source in sources:
        if not isinstance(source, (list, tuple)):
            continue
        for alias in source:
            if isinstance(alias, str) and alias.strip():
                aliases.append(alias.strip())
    return aliases


def _attribute_value(attributes: Optional[Dict[str, Any]], key: str) -> Any:
    if not attributes:
        return None
    value = attributes.get(key)
    if isinstance(value, dict):
        return value.get("value")
    return value


def _parse_revenuecat(body: Any) -> Optional[RevenueCatWebhook]:
    if not isinstance(body, dict):
        return None
    payload = dict(body)
    event = payload.get("event")
    if event is None:
        # Older deliveries put the event fields at the top level.
        if not any(payload.get(field) for field in _EVENT_MARKER_FIELDS):
            return None
        payload["event"] = {k: v for k, v in body.items() if k != "subscriber"}
    elif not isinstance(event, dict):
        return None
    try:
        return RevenueCatWebhook.model_validate(payload)
    except ValidationError as exc:
        logger.warning("RevenueCat payload failed validation: %s", exc.errors()[:3])
        return None


def _resolve_event_id(event: RevenueCatEvent) -> Optional[str]:
    for candidate in (event.id, event.event_id, event.webhook_id, event.transaction_id):
        if candidate and str(candidate).strip():
            return str(candidate).strip()
    return None


def _resolve_product_id(event: RevenueCatEvent) -> Optional[str]:
    extra = event.model_extra or {}
    transaction_pid = event.transaction.product_id if event.transaction else None
    return event.product_id or event.product_identifier or extra.get("productId") or transaction_pid


def _resolve_transfer(webhook: RevenueCatWebhook) -> Dict[str, Optional[str]]:
    event = webhook.event or RevenueCatEvent()
    subscriber = event.subscriber or webhook.subscriber or RevenueCatSubscriber()

    transfer_from = _first_user_id(
        event.transferred_from,
        event.original_app_user_id,
        subscriber.original_app_user_id,
        webhook.original_app_user_id,
    )
    transfer_to = _first_user_id(
        event.transferred_to,
        event.new_app_user_id,
        event.app_user_id,
        subscriber.app_user_id,
        webhook.app_user_id,
    )
    if not transfer_to:
        aliases = _string_aliases(event.aliases, subscriber.aliases, webhook.aliases)
        if transfer_from:
            transfer_to = next((alias for alias in aliases if alias != transfer_from), None)
        if not transfer_to and aliases:
            transfer_to = aliases[-1]
    return {"from": transfer_from, "to": transfer_to}


def _resolve_user_id(webhook: RevenueCatWebhook) -> Optional[str]:
    event = webhook.event or RevenueCatEvent()
    subscriber = event.subscriber or webhook.subscriber or RevenueCatSubscriber()
    attributes = (
        event.subscriber_attributes
        or webhook.subscriber_attributes
        or subscriber.subscriber_attributes
        or {}
    )
    return _first_user_id(
        event.app_user_id,
        subscriber.app_user_id,
        webhook.app_user_id,
        subscriber.original_app_user_id,
        event.original_app_user_id,
        webhook.original_app_user_id,
        event.aliases,
        subscriber.aliases,
        webhook.aliases,
        _attribute_value(attributes, "firebase_uid"),
        _attribute_value(attributes, "firebaseUid"),
    )


def normalize_revenuecat_event(body: Any) -> NormalizedEvent:
    """Reduce a RevenueCat webhook body to a ``NormalizedEvent``.

    Never raises. Unresolvable payloads come back with ``ignored_reason`` or
    ``error_reason`` set and no ``user_id``.
    """
    webhook = _parse_revenuecat(body)
    if webhook is None or webhook.event is None:
        return NormalizedEvent(event_type=UNKNOWN_EVENT, ignored_reason=IGNORED_UNRECOGNIZED)

    event = webhook.event
    event_type = (event.type or event.event_type or UNKNOWN_EVENT).strip() or UNKNOWN_EVENT
    event_id = _resolve_event_id(event)
    product_id = _resolve_product_id(event)

    transfer_from = transfer_to = None
    if event_type == TRANSFER_EVENT:
        transfer = _resolve_transfer(webhook)
        transfer_from, transfer_to = transfer["from"], transfer["to"]
        user_id = transfer_to
    else:
        user_id = _resolve_user_id(webhook)

    base = dict(
        event_type=event_type,
        event_id=event_id,
        product_id=product_id,
        transfer_from=transfer_from,
        transfer_to=transfer_to,
    )

    if not user_id:
        if event_type == TRANSFER_EVENT:
            return NormalizedEvent(ignored_reason=IGNORED_TRANSFER_WITHOUT_USER, **base)
        return NormalizedEvent(error_reason=ERROR_MISSING_USER, **base)

    if user_id.startswith(ANONYMOUS_ID_PREFIX):
        return NormalizedEvent(user_id=user_id, ignored_reason=IGNORED_ANONYMOUS_USER, **base)

    return NormalizedEvent(user_id=user_id, **base)


# =============================================================================
# STRIPE
# =============================================================================

class StripeEventData(_Loose):
    object: Dict[str, Any] = Field(default_factory=dict)


class StripeEvent(_Loose):
    id: str
    type: str
    data: StripeEventData = Field(default_factory=StripeEventData)

    @property
    def event_id(self) -> str:
        return self.id

    @property
    def event_type(self) -> str:
        return self.type

    @property
    def data_object(self) -> Dict[str, Any]:
        return self.data.object


def normalize_stripe_event(payload: Any) -> Optional[StripeEvent]:
    """Parse a verified Stripe event body; ``None`` when the shape is wrong."""
    if not isinstance(payload, dict):
        return None
    try:
        return StripeEvent.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Stripe event failed validation: %s", exc.errors()[:3])
        return None

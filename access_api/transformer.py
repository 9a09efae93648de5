"""RevenueCat subscriber snapshot -> entitlement field updates.

``transform_subscriber_snapshot`` is pure: it reads the snapshot, the webhook
body and the current record, and returns the merge payload to write. Field
removals are expressed with ``firestore.DELETE_FIELD`` and credit grants with
``firestore.Increment`` so the write never clobbers concurrent changes.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from google.cloud import firestore

from .access_tier import resolve_access_tier
from .catalog import (
    EXPIRED_LABEL,
    GRANTED_BY_CME_LABEL,
    TIER_BOARD_REVIEW,
    TIER_CME_ANNUAL,
    CreditProduct,
    ProductCatalog,
    SubscriptionProduct,
)
from .utils.timestamps import millis_to_datetime, parse_epoch_millis

logger = logging.getLogger("access_api.transformer")

PURCHASE_EVENT_TYPES = frozenset({
    "INITIAL_PURCHASE",
    "NON_RENEWING_PURCHASE",
    "IN_APP_PURCHASE",
    "PURCHASE",
    "PRODUCT_CHANGE",
})

EXPIRATION_KEYS = (
    "expiration_at_ms",
    "expires_at_ms",
    "expires_date_ms",
    "expiration_date_ms",
    "expires_date",
    "expiration_date",
)

DELETE = firestore.DELETE_FIELD


@dataclass(frozen=True)
class SubscriptionState:
    product: SubscriptionProduct
    product_id: str
    subscription_id: str
    is_active: bool
    is_trialing: bool
    cancel_at_period_end: bool
    expiration_ms: Optional[int] = None
    start_ms: Optional[int] = None
    trial_start_ms: Optional[int] = None
    trial_end_ms: Optional[int] = None
    store: Optional[str] = None
    environment: Optional[str] = None

    def summary(self, source: str = "direct") -> Dict[str, Any]:
        return {
            "productIdentifier": self.product_id,
            "subscriptionId": self.subscription_id,
            "active": self.is_active,
            "trialing": self.is_trialing,
            "expirationMs": self.expiration_ms,
            "source": source,
        }


@dataclass
class TransformResult:
    updates: Dict[str, Any]
    diagnostic: Dict[str, Any]
    credit_increment: float = 0
    board_state: Optional[SubscriptionState] = field(default=None, repr=False)
    cme_state: Optional[SubscriptionState] = field(default=None, repr=False)

    @property
    def has_changes(self) -> bool:
        return bool(
            self.board_state
            or self.cme_state
            or (self.diagnostic.get("creditPurchase") or {}).get("detected")
        )


# =============================================================================
# SMALL COERCIONS
# =============================================================================

def _positive_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(numeric) or numeric <= 0:
        return None
    return int(numeric) if numeric.is_integer() else numeric


def _millis(*values: Any) -> Optional[int]:
    return parse_epoch_millis(*values)


def _timestamp(value_ms: Optional[int]):
    if not value_ms or value_ms <= 0:
        return None
    return millis_to_datetime(int(value_ms))


def _dig(source: Any, *path: str) -> Any:
    current = source
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


# =============================================================================
# CREDIT PURCHASES
# =============================================================================

def extract_product_id(event: Mapping[str, Any]) -> Optional[str]:
    return (
        event.get("product_id")
        or event.get("productIdentifier")
        or event.get("productId")
        or _dig(event, "transaction", "product_id")
        or _dig(event, "transaction", "productId")
    )


def extract_quantity(payload: Mapping[str, Any], product_id: Optional[str], credit: Optional[CreditProduct]) -> float:
    """Purchased quantity from the most specific payload location available."""
    event = payload.get("event") or {}
    candidates = [
        _dig(event, "store_transaction", "quantity"),
        _dig(event, "purchased_product", "store_transaction", "quantity"),
        _dig(event, "transaction", "quantity"),
        _dig(payload, "transaction", "quantity"),
    ]
    non_subscriptions = payload.get("non_subscriptions")
    if product_id and isinstance(non_subscriptions, Mapping):
        purchases = non_subscriptions.get(product_id)
        if isinstance(purchases, list) and purchases:
            candidates.append(_dig(purchases[0], "store_transaction", "quantity"))

    for candidate in candidates:
        quantity = _positive_number(candidate)
        if quantity:
            return quantity

    if credit is not None:
        default = _positive_number(credit.default_quantity)
        if default:
            return default
    return 1


def extract_purchase_timestamp(payload: Mapping[str, Any], now_ms: int) -> Dict[str, Any]:
    event = payload.get("event") or {}
    candidates = (
        ("event.event_timestamp_ms", event.get("event_timestamp_ms")),
        ("event.eventTimestampMs", event.get("eventTimestampMs")),
        ("event.purchased_at_ms", event.get("purchased_at_ms")),
        ("event.purchasedAtMs", event.get("purchasedAtMs")),
        ("event.transaction.purchase_date_ms", _dig(event, "transaction", "purchase_date_ms")),
        ("event.store_transaction.purchase_date_ms", _dig(event, "store_transaction", "purchase_date_ms")),
        (
            "event.purchased_product.store_transaction.purchase_date_ms",
            _dig(event, "purchased_product", "store_transaction", "purchase_date_ms"),
        ),
        ("payload.event_timestamp_ms", payload.get("event_timestamp_ms")),
        ("payload.purchased_at_ms", payload.get("purchased_at_ms")),
    )
    for source, candidate in candidates:
        numeric = _positive_number(candidate)
        if numeric:
            return {"millis": int(numeric), "source": source}
    return {"millis": now_ms, "source": "fallback_now"}


def _existing_credits(record: Mapping[str, Any]) -> float:
    return _positive_number(record.get("cmeCreditsAvailable")) or 0


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

def _expiration_millis(subscription: Mapping[str, Any]) -> Optional[int]:
    for key in EXPIRATION_KEYS:
        if key in subscription:
            millis = _millis(subscription.get(key))
            if millis:
                return millis
    return None


def evaluate_subscription(
    product_id: str,
    subscription: Mapping[str, Any],
    catalog: ProductCatalog,
    now_ms: int,
) -> Optional[SubscriptionState]:
    """Normalize one snapshot subscription entry; ``None`` for unknown SKUs."""
    product = catalog.subscription(product_id)
    if product is None or not isinstance(subscription, Mapping):
        return None

    expiration_ms = _expiration_millis(subscription)
    start_ms = _millis(
        subscription.get("purchased_at_ms"),
        subscription.get("original_purchase_date_ms"),
        subscription.get("purchase_date"),
        subscription.get("original_purchase_date"),
    )
    trial_start_ms = _millis(subscription.get("trial_started_at_ms"), subscription.get("trial_start_at_ms"))
    trial_end_ms = _millis(subscription.get("trial_ends_at_ms"), subscription.get("trial_end_at_ms"))
    cancellation_ms = _millis(
        subscription.get("unsubscribe_detected_at_ms"),
        subscription.get("cancellation_at_ms"),
        subscription.get("unsubscribe_detected_at"),
    )

    in_trial_period = str(subscription.get("period_type") or "").lower() == "trial"
    is_trialing = False
    if in_trial_period:
        if trial_end_ms:
            is_trialing = trial_end_ms > now_ms
        elif expiration_ms:
            is_trialing = expiration_ms > now_ms

    is_active = bool(expiration_ms) and expiration_ms > now_ms
    cancel_at_period_end = subscription.get("will_renew") is False or (
        bool(cancellation_ms) and (not expiration_ms or expiration_ms > now_ms)
    )

    subscription_id = (
        subscription.get("original_transaction_id")
        or subscription.get("id")
        or product_id
    )

    return SubscriptionState(
        product=product,
        product_id=product_id,
        subscription_id=str(subscription_id),
        is_active=is_active or is_trialing,
        is_trialing=is_trialing,
        cancel_at_period_end=cancel_at_period_end,
        expiration_ms=expiration_ms,
        start_ms=start_ms,
        trial_start_ms=trial_start_ms,
        trial_end_ms=trial_end_ms,
        store=subscription.get("store"),
        environment=subscription.get("environment"),
    )


def pick_relevant_subscription(states: Iterable[SubscriptionState]) -> Optional[SubscriptionState]:
    """Active first, then the later expiration, then the later start."""
    states = list(states)
    if not states:
        return None
    active = [state for state in states if state.is_active]
    pool = active or states
    best = pool[0]
    for current in pool[1:]:
        best_exp = best.expiration_ms or 0
        current_exp = current.expiration_ms or 0
        if current_exp != best_exp:
            if current_exp > best_exp:
                best = current
            continue
        if (current.start_ms or 0) > (best.start_ms or 0):
            best = current
    return best


# =============================================================================
# FIELD BUILDERS
# =============================================================================

def _start_value(state: SubscriptionState, grant_when_missing: bool):
    start = _timestamp(state.start_ms)
    if start is not None:
        return start
    return firestore.SERVER_TIMESTAMP if grant_when_missing else DELETE


def _end_value(state: SubscriptionState):
    end = _timestamp(state.expiration_ms)
    return end if end is not None else DELETE


def _trial_end_value(state: SubscriptionState):
    if state.is_trialing and state.trial_end_ms:
        return _timestamp(state.trial_end_ms)
    return DELETE


def _board_fields(state: SubscriptionState) -> Dict[str, Any]:
    return {
        "boardReviewActive": state.is_active,
        "boardReviewTier": state.product.plan_name if state.is_active else EXPIRED_LABEL,
        "boardReviewSubscriptionId": state.subscription_id or DELETE,
        "boardReviewSubscriptionStartDate": _start_value(state, state.is_active),
        "boardReviewSubscriptionEndDate": _end_value(state),
        "boardReviewWillCancelAtPeriodEnd": bool(state.cancel_at_period_end),
        "boardReviewTrialEndDate": _trial_end_value(state),
    }


def _cme_fields(state: SubscriptionState) -> Dict[str, Any]:
    return {
        "cmeSubscriptionActive": state.is_active,
        "cmeSubscriptionPlan": state.product.plan_name if state.is_active else EXPIRED_LABEL,
        "cmeSubscriptionId": state.subscription_id or DELETE,
        "cmeSubscriptionStartDate": _start_value(state, state.is_active),
        "cmeSubscriptionEndDate": _end_value(state),
        "cmeSubscriptionWillCancelAtPeriodEnd": bool(state.cancel_at_period_end),
        "cmeSubscriptionTrialEndDate": _trial_end_value(state),
    }


def _board_granted_by_cme(state: SubscriptionState) -> Dict[str, Any]:
    return {
        "boardReviewActive": True,
        "boardReviewTier": GRANTED_BY_CME_LABEL,
        "boardReviewSubscriptionId": state.subscription_id or DELETE,
        "boardReviewSubscriptionStartDate": _start_value(state, True),
        "boardReviewSubscriptionEndDate": _end_value(state),
        "boardReviewWillCancelAtPeriodEnd": bool(state.cancel_at_period_end),
        "boardReviewTrialEndDate": _trial_end_value(state),
    }


def _board_cleared(state: SubscriptionState) -> Dict[str, Any]:
    return {
        "boardReviewActive": False,
        "boardReviewTier": EXPIRED_LABEL,
        "boardReviewSubscriptionId": state.subscription_id or DELETE,
        "boardReviewSubscriptionStartDate": _start_value(state, False),
        "boardReviewSubscriptionEndDate": DELETE,
        "boardReviewWillCancelAtPeriodEnd": False,
        "boardReviewTrialEndDate": DELETE,
    }


def extract_subscriber_attributes(payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Flattened ``{key: value}`` subscriber attributes, ``None`` when absent."""
    source = payload.get("subscriber_attributes")
    if source is None:
        source = _dig(payload, "event", "subscriber_attributes")
    if source is None:
        source = _dig(payload, "subscriber", "subscriber_attributes")
    if not isinstance(source, Mapping):
        return None

    flattened: Dict[str, Any] = {}
    for key, attribute in source.items():
        if isinstance(attribute, Mapping) and "value" in attribute:
            flattened[key] = attribute.get("value")
            if attribute.get("updated_at_ms"):
                flattened[f"{key}_updated_at"] = attribute.get("updated_at_ms")
        else:
            flattened[key] = attribute
    return flattened


def _effective_flag(updates: Mapping[str, Any], record: Mapping[str, Any], field_name: str) -> bool:
    if field_name in updates:
        return updates[field_name] is True
    return record.get(field_name) is True


# =============================================================================
# ENTRY POINT
# =============================================================================

def transform_subscriber_snapshot(
    snapshot: Mapping[str, Any],
    webhook_payload: Mapping[str, Any],
    existing_record: Optional[Mapping[str, Any]],
    catalog: ProductCatalog,
    now_ms: int,
) -> TransformResult:
    existing_record = existing_record or {}
    subscriber = snapshot.get("subscriber") if isinstance(snapshot.get("subscriber"), Mapping) else {}
    subscriptions = subscriber.get("subscriptions") if isinstance(subscriber.get("subscriptions"), Mapping) else {}
    event = webhook_payload.get("event") if isinstance(webhook_payload.get("event"), Mapping) else webhook_payload

    updates: Dict[str, Any] = {}
    diagnostic: Dict[str, Any] = {}

    # 1. Consumable credits
    event_type = event.get("type") or event.get("event_type")
    product_id = extract_product_id(event)
    diagnostic["eventType"] = event_type
    diagnostic["productId"] = product_id

    credit = catalog.credit(product_id)
    credit_increment: float = 0
    if credit is not None and event_type in PURCHASE_EVENT_TYPES:
        quantity = extract_quantity(webhook_payload, product_id, credit)
        units = _positive_number(credit.units_per_purchase) or 1
        credit_increment = quantity * units
        purchased = extract_purchase_timestamp(webhook_payload, now_ms)

        updates["cmeCreditsAvailable"] = firestore.Increment(credit_increment)
        updates["lastCmeCreditPurchaseDate"] = _timestamp(purchased["millis"])

        prior = _existing_credits(existing_record)
        diagnostic["creditPurchase"] = {
            "detected": True,
            "eventType": event_type,
            "productId": product_id,
            "quantity": quantity,
            "creditsPerUnit": units,
            "creditsGranted": credit_increment,
            "priorCredits": prior,
            "estimatedCreditsAfter": prior + credit_increment,
            "timestampMillis": purchased["millis"],
            "timestampSource": purchased["source"],
        }
        logger.info(
            "Credit purchase detected product_id=%s quantity=%s granted=%s",
            product_id,
            quantity,
            credit_increment,
        )
    else:
        diagnostic["creditPurchase"] = {
            "detected": False,
            "reason": "product_not_configured" if credit is None else "event_type_not_purchase",
            "eventType": event_type,
            "productId": product_id,
        }

    # 2. Evaluate each catalog subscription in the snapshot
    board_candidates: List[SubscriptionState] = []
    cme_candidates: List[SubscriptionState] = []
    for sku, entry in subscriptions.items():
        state = evaluate_subscription(sku, entry, catalog, now_ms)
        if state is None:
            continue
        if state.product.tier == TIER_BOARD_REVIEW:
            board_candidates.append(state)
        elif state.product.tier == TIER_CME_ANNUAL:
            cme_candidates.append(state)

    # 3. Tie-break
    board_state = pick_relevant_subscription(board_candidates)
    cme_state = pick_relevant_subscription(cme_candidates)

    updates["lastRevenueCatSync"] = firestore.SERVER_TIMESTAMP

    attributes = extract_subscriber_attributes(webhook_payload)
    if attributes is not None:
        updates["revenuecatSubscriberAttributes"] = attributes if attributes else DELETE

    first_seen = _millis(subscriber.get("first_seen_ms"), subscriber.get("first_seen"))
    if first_seen:
        updates["revenuecatFirstSeen"] = _timestamp(first_seen)

    # 4. Per-tier fields and the CME cascade
    trial_type: Optional[str] = None
    if board_state is not None:
        updates.update(_board_fields(board_state))
        if board_state.is_trialing and board_state.trial_end_ms:
            trial_type = board_state.product.trial_type

    if cme_state is not None:
        updates.update(_cme_fields(cme_state))
        if cme_state.is_trialing and cme_state.trial_end_ms:
            trial_type = cme_state.product.trial_type

        if cme_state.product.grants_board_review:
            standalone_board_active = board_state is not None and board_state.is_active
            if cme_state.is_active:
                if not standalone_board_active:
                    updates.update(_board_granted_by_cme(cme_state))
            elif not standalone_board_active:
                updates.update(_board_cleared(cme_state))

    # 5. Trial flags
    if trial_type:
        updates["hasActiveTrial"] = True
        updates["trialType"] = trial_type
    else:
        updates["hasActiveTrial"] = DELETE
        updates["trialType"] = DELETE

    # 6. Tier
    updates["accessTier"] = resolve_access_tier(
        _effective_flag(updates, existing_record, "cmeSubscriptionActive"),
        _effective_flag(updates, existing_record, "boardReviewActive"),
        _existing_credits(existing_record) + credit_increment,
    )

    if board_state is not None:
        diagnostic["boardSubscription"] = board_state.summary("direct")
    elif cme_state is not None and cme_state.product.grants_board_review:
        diagnostic["boardSubscription"] = cme_state.summary("cme_grant")
    else:
        diagnostic["boardSubscription"] = None
    diagnostic["cmeSubscription"] = cme_state.summary("direct") if cme_state is not None else None

    return TransformResult(
        updates=updates,
        diagnostic=diagnostic,
        credit_increment=credit_increment,
        board_state=board_state,
        cme_state=cme_state,
    )

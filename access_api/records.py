"""Entitlement record persistence helpers.

The entitlement record lives at ``users/{uid}``. Handlers build a dict of
field updates (possibly containing ``DELETE_FIELD``, ``SERVER_TIMESTAMP`` and
``Increment`` sentinels) and merge it into the document. ``apply_field_updates``
projects the same merge locally so the tier can be resolved against the
post-write state before writing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from google.cloud import firestore

from .access_tier import access_tier_for_record
from .catalog import TIER_BOARD_REVIEW, TIER_CME_ANNUAL

logger = logging.getLogger("access_api.records")

USERS = "users"
PROMOTIONS = "promotions"


def user_ref(db: firestore.Client, uid: str):
    return db.collection(USERS).document(uid)


def load_record(db: firestore.Client, uid: str) -> Optional[Dict[str, Any]]:
    """Current entitlement record, or ``None`` when the user doc is missing."""
    snap = user_ref(db, uid).get()
    if not snap.exists:
        return None
    return snap.to_dict() or {}


def _is_delete(value: Any) -> bool:
    return value is firestore.DELETE_FIELD


def _is_server_timestamp(value: Any) -> bool:
    return value is firestore.SERVER_TIMESTAMP


def apply_field_updates(
    existing: Mapping[str, Any],
    updates: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Project a merge write onto ``existing`` without touching Firestore."""
    projected = dict(existing or {})
    now = now or datetime.now(timezone.utc)
    for field, value in updates.items():
        if _is_delete(value):
            projected.pop(field, None)
        elif _is_server_timestamp(value):
            projected[field] = now
        elif isinstance(value, firestore.Increment):
            current = projected.get(field)
            base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
            projected[field] = base + value.value
        else:
            projected[field] = value
    return projected


def diff_fields(existing: Mapping[str, Any], proposed: Mapping[str, Any]) -> Dict[str, Any]:
    """Subset of ``proposed`` whose values differ from ``existing``."""
    changed: Dict[str, Any] = {}
    for field, value in proposed.items():
        if _is_delete(value):
            if field in existing:
                changed[field] = value
        elif field not in existing or existing.get(field) != value:
            changed[field] = value
    return changed


def write_record(db: firestore.Client, uid: str, updates: Dict[str, Any]) -> None:
    user_ref(db, uid).set(updates, merge=True)


# =============================================================================
# LOOKUPS
# =============================================================================

def _first_doc_id(query) -> Optional[str]:
    doc = next(iter(query.limit(1).stream()), None)
    return doc.id if doc is not None else None


def find_uid_by_stripe_customer(db: firestore.Client, customer_id: Optional[str]) -> Optional[str]:
    if not customer_id:
        return None
    return _first_doc_id(db.collection(USERS).where("stripeCustomerId", "==", customer_id))


def find_uid_by_email(db: firestore.Client, email: Optional[str]) -> Optional[str]:
    normalized = str(email or "").strip().lower()
    if not normalized:
        return None
    return _first_doc_id(db.collection(USERS).where("email", "==", normalized))


# =============================================================================
# RECORD INITIALIZATION
# =============================================================================

def default_entitlement_fields() -> Dict[str, Any]:
    return {
        "isRegistered": False,
        "accessTier": "free_guest",
        "boardReviewActive": False,
        "boardReviewSubscriptionEndDate": None,
        "cmeSubscriptionActive": False,
        "cmeSubscriptionEndDate": None,
        "cmeCreditsAvailable": 0,
        "stripeCustomerId": None,
    }


def initialize_entitlement_record(
    db: firestore.Client,
    uid: str,
    email: Optional[str] = None,
) -> bool:
    """Fill in default entitlement fields the user doc does not have yet.

    Existing values are never overwritten. Returns ``True`` when the document
    did not exist before.
    """
    ref = user_ref(db, uid)
    snap = ref.get()
    existing = (snap.to_dict() or {}) if snap.exists else {}

    missing = {k: v for k, v in default_entitlement_fields().items() if k not in existing}
    normalized_email = str(email or "").strip().lower()
    if normalized_email and not existing.get("email"):
        missing["email"] = normalized_email
    if not missing and snap.exists:
        return False
    if "accessTier" in missing:
        missing["accessTier"] = access_tier_for_record({**existing, **missing})

    missing["updatedAt"] = firestore.SERVER_TIMESTAMP
    ref.set(missing, merge=True)
    logger.info("Initialized entitlement record uid=%s created=%s fields=%s", uid, not snap.exists, sorted(missing))
    return not snap.exists


# =============================================================================
# PROMOTIONAL GRANT
# =============================================================================

class PromotionUnavailable(Exception):
    pass


def promotional_grant_fields(promo: Mapping[str, Any], promo_id: str, now: datetime) -> Dict[str, Any]:
    """Entitlement fields granted by a ``promotions`` document."""
    try:
        duration_days = int(promo.get("durationDays") or 0)
    except (TypeError, ValueError):
        duration_days = 0
    if duration_days <= 0:
        return {}

    end_date = now + timedelta(days=duration_days)
    label = f"Promotional Access ({duration_days} days)"
    tier = str(promo.get("accessTier") or "").strip()

    fields: Dict[str, Any] = {}
    if tier == TIER_CME_ANNUAL:
        fields.update({
            "cmeSubscriptionActive": True,
            "cmeSubscriptionEndDate": end_date,
            "boardReviewActive": True,
            "boardReviewSubscriptionEndDate": end_date,
            "boardReviewTier": label,
        })
    elif tier == TIER_BOARD_REVIEW:
        fields.update({
            "boardReviewActive": True,
            "boardReviewSubscriptionEndDate": end_date,
            "boardReviewTier": label,
        })
    else:
        return {}

    fields["notes"] = f"Promotional access granted via promo ID: {promo_id}"
    return fields


def find_available_promotion(db: firestore.Client, email: Optional[str]):
    normalized = str(email or "").strip().lower()
    if not normalized:
        return None
    query = (
        db.collection(PROMOTIONS)
        .where("email", "==", normalized)
        .where("status", "==", "available")
        .limit(1)
    )
    return next(iter(query.stream()), None)


def claim_promotion(
    db: firestore.Client,
    uid: str,
    email: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[Dict[str, Any]]:
    """Apply an available promotion for ``email`` to ``uid`` exactly once.

    The promotion is re-read inside a transaction so two accounts cannot
    claim the same promotion. Returns the fields written, or ``None`` when
    there was nothing to claim.
    """
    promo_doc = find_available_promotion(db, email)
    if promo_doc is None:
        return None

    now = now or datetime.now(timezone.utc)
    promo_ref = promo_doc.reference
    ref = user_ref(db, uid)

    @firestore.transactional
    def claim_in_transaction(transaction):
        fresh = promo_ref.get(transaction=transaction)
        promo = fresh.to_dict() if fresh.exists else {}
        if not fresh.exists or promo.get("status") != "available":
            raise PromotionUnavailable("This promotional offer is no longer available")

        grant = promotional_grant_fields(promo, promo_ref.id, now)
        if not grant:
            logger.warning("Promotion %s has no usable grant (tier=%s)", promo_ref.id, promo.get("accessTier"))
            return None

        user_snap = ref.get(transaction=transaction)
        existing = (user_snap.to_dict() or {}) if user_snap.exists else {}
        grant["accessTier"] = access_tier_for_record(apply_field_updates(existing, grant, now))
        grant["isRegistered"] = True
        grant["updatedAt"] = firestore.SERVER_TIMESTAMP

        transaction.set(ref, grant, merge=True)
        transaction.update(promo_ref, {
            "status": "claimed",
            "claimedByUid": uid,
            "claimedAt": firestore.SERVER_TIMESTAMP,
        })
        return grant

    try:
        result = claim_in_transaction(db.transaction())
    except PromotionUnavailable:
        logger.info("Promotion %s was claimed concurrently; uid=%s gets standard access", promo_ref.id, uid)
        return None

    if result:
        logger.info("Applied promotion %s to uid=%s tier=%s", promo_ref.id, uid, result.get("accessTier"))
    return result


def changed_field_names(updates: Mapping[str, Any]) -> List[str]:
    return [field for field in updates if field != "updatedAt"]

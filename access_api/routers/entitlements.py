"""Entitlements router - client-triggered reconciliation.

Endpoints:
    POST /api/entitlements/recompute  - Re-derive access tier and expire lapsed flags
    POST /api/entitlements/initialize - Create default entitlement fields, claim promotions

Webhooks are the primary writers of the entitlement record. Recompute is the
safety net for missed or reordered deliveries: it never grants access on its
own, it only expires flags whose known end date has passed and keeps
``accessTier`` consistent with the stored flags.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from google.cloud import firestore

from ..access_tier import access_tier_for_record
from ..catalog import GRANTED_BY_CME_LABEL
from ..dependencies import get_firestore, verify_firebase_token
from ..middleware.rate_limit import rate_limit_write
from ..models import ErrorResponse, InitializeResponse, RecomputeRequest, RecomputeResponse
from ..records import (
    apply_field_updates,
    changed_field_names,
    claim_promotion,
    diff_fields,
    initialize_entitlement_record,
    load_record,
    write_record,
)
from ..utils.client_ip import get_client_ip
from ..utils.security_logger import security_logger
from ..utils.timestamps import millis_to_datetime, millis_to_iso, now_millis, to_epoch_millis
from ..windows import (
    BOARD_REVIEW_BUCKET,
    CME_BUCKET,
    SOURCE_ALTERNATE_TRIAL,
    SOURCE_TRIAL,
    SubscriptionWindow,
    compute_subscription_window,
    window_has_lapsed,
)

router = APIRouter()
logger = logging.getLogger("access_api.entitlements")

DELETE = firestore.DELETE_FIELD


class RecomputeError(Exception):
    """Client-facing recompute failure with a callable-style error code."""

    def __init__(self, status_code: int, code: str, error: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.code = code
        self.error = error
        self.details = details or {}


def _error_response(
    status_code: int,
    *,
    error: str,
    code: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    payload: Dict[str, Any] = {"error": error, "code": code}
    if details:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload)


# =============================================================================
# RECOMPUTE
# =============================================================================

def resolve_target_uid(decoded_token: Mapping[str, Any], requested_uid: Optional[str]) -> str:
    """Target of a recompute; other users require the ``admin`` claim."""
    caller_uid = str(decoded_token.get("uid") or "").strip()
    if not caller_uid:
        raise RecomputeError(401, "unauthenticated", "Authentication required.")

    target_uid = (requested_uid or "").strip() or caller_uid
    if target_uid != caller_uid and decoded_token.get("admin") is not True:
        raise RecomputeError(403, "permission-denied", "Insufficient permissions to recompute this user.")
    return target_uid


def expire_lapsed_flags(
    record: Mapping[str, Any],
    cme_window: SubscriptionWindow,
    board_window: SubscriptionWindow,
    now_ms: int,
) -> Dict[str, Any]:
    """Flag updates for buckets whose known effective end is in the past.

    Board access granted by the CME subscription expires with it. A window
    that is open while its flag is off is left alone.
    """
    updates: Dict[str, Any] = {}
    expired_windows: List[SubscriptionWindow] = []

    if window_has_lapsed(cme_window, now_ms):
        updates["cmeSubscriptionActive"] = False
        expired_windows.append(cme_window)
        if record.get("boardReviewActive") and record.get("boardReviewTier") == GRANTED_BY_CME_LABEL:
            updates["boardReviewActive"] = False

    if window_has_lapsed(board_window, now_ms):
        updates["boardReviewActive"] = False
        expired_windows.append(board_window)

    # A trial that carried an expired bucket is over.
    trial_lapsed = any(w.end_source in (SOURCE_TRIAL, SOURCE_ALTERNATE_TRIAL) for w in expired_windows)
    if trial_lapsed and "hasActiveTrial" in record:
        updates["hasActiveTrial"] = DELETE
        updates["trialType"] = DELETE

    return updates


def recompute_entitlements(record: Mapping[str, Any], now_ms: int) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Return ``(changed_fields, details)`` for a stored entitlement record."""
    cme_before = compute_subscription_window(record, CME_BUCKET, now_ms)
    board_before = compute_subscription_window(record, BOARD_REVIEW_BUCKET, now_ms)

    proposed = expire_lapsed_flags(record, cme_before, board_before, now_ms)
    projected = apply_field_updates(record, proposed, millis_to_datetime(now_ms))
    proposed["accessTier"] = access_tier_for_record(projected)
    projected["accessTier"] = proposed["accessTier"]

    changes = diff_fields(record, proposed)
    details = {
        "accessTier": proposed["accessTier"],
        "record": projected,
        "cme": (cme_before, compute_subscription_window(projected, CME_BUCKET, now_ms)),
        "boardReview": (board_before, compute_subscription_window(projected, BOARD_REVIEW_BUCKET, now_ms)),
    }
    return changes, details


def _iso(value: Any) -> Optional[str]:
    millis = to_epoch_millis(value)
    return millis_to_iso(millis) if millis > 0 else None


def _credits(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


@router.post(
    "/entitlements/recompute",
    response_model=RecomputeResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
@rate_limit_write
async def recompute_access_tier(
    request: Request,
    payload: Optional[RecomputeRequest] = None,
    decoded_token: dict = Depends(verify_firebase_token),
    db: firestore.Client = Depends(get_firestore),
):
    """Re-derive the caller's (or, for admins, any user's) access tier."""
    requested_uid = payload.uid if payload is not None else None

    try:
        target_uid = resolve_target_uid(decoded_token, requested_uid)
    except RecomputeError as exc:
        if exc.code == "permission-denied":
            security_logger.permission_denied(
                ip=get_client_ip(request),
                uid=decoded_token.get("uid"),
                target_uid=requested_uid or "",
                path=request.url.path,
            )
        return _error_response(exc.status_code, error=exc.error, code=exc.code)

    record = load_record(db, target_uid)
    if record is None:
        return _error_response(404, error="User record not found.", code="not-found")

    now_ms = now_millis()
    changes, details = recompute_entitlements(record, now_ms)

    updated_fields: List[str] = []
    if changes:
        updated_fields = changed_field_names(changes)
        changes["updatedAt"] = firestore.SERVER_TIMESTAMP
        write_record(db, target_uid, changes)
        logger.info(
            "Recompute wrote uid=%s caller=%s fields=%s access_tier=%s",
            target_uid,
            decoded_token.get("uid"),
            updated_fields,
            details["accessTier"],
        )
    else:
        logger.debug("Recompute found no drift uid=%s", target_uid)

    for bucket in ("cme", "boardReview"):
        before, _ = details[bucket]
        if before.fallback_active and not before.active_flag:
            logger.warning(
                "Entitlement drift uid=%s bucket=%s flag=false effective_end=%s source=%s",
                target_uid,
                bucket,
                millis_to_iso(before.effective_end_ms),
                before.end_source,
            )

    current = details["record"]
    cme_before, cme_after = details["cme"]
    board_before, board_after = details["boardReview"]
    return {
        "success": True,
        "uid": target_uid,
        "accessTier": details["accessTier"],
        "updated": bool(changes),
        "updatedFields": updated_fields,
        "cme": {"before": cme_before.to_response(), "after": cme_after.to_response()},
        "boardReview": {"before": board_before.to_response(), "after": board_after.to_response()},
        "trial": {
            "hasActiveTrial": bool(current.get("hasActiveTrial")),
            "trialType": current.get("trialType") or None,
        },
        "boardReviewActive": current.get("boardReviewActive") is True,
        "cmeSubscriptionActive": current.get("cmeSubscriptionActive") is True,
        "boardReviewSubscriptionEndDate": _iso(current.get("boardReviewSubscriptionEndDate")),
        "cmeSubscriptionEndDate": _iso(current.get("cmeSubscriptionEndDate")),
        "cmeCreditsAvailable": _credits(current.get("cmeCreditsAvailable")),
    }


# =============================================================================
# INITIALIZE
# =============================================================================

@router.post(
    "/entitlements/initialize",
    response_model=InitializeResponse,
    responses={401: {"model": ErrorResponse}},
)
@rate_limit_write
async def initialize_entitlements(
    request: Request,
    decoded_token: dict = Depends(verify_firebase_token),
    db: firestore.Client = Depends(get_firestore),
):
    """Create default entitlement fields for the caller and claim any promotion."""
    uid = decoded_token["uid"]
    email = decoded_token.get("email")

    created = initialize_entitlement_record(db, uid, email)
    grant = claim_promotion(db, uid, email)

    record = load_record(db, uid) or {}
    return {
        "success": True,
        "uid": uid,
        "created": created,
        "promoApplied": bool(grant),
        "accessTier": access_tier_for_record(record),
    }

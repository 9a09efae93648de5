"""Access tier resolution.

This is the only place the tier precedence is encoded. Webhook handlers, the
recompute endpoint and promotional grants all call ``resolve_access_tier``.
"""

from __future__ import annotations

from typing import Any, Mapping

FREE_GUEST = "free_guest"
CME_CREDITS_ONLY = "cme_credits_only"
BOARD_REVIEW = "board_review"
CME_ANNUAL = "cme_annual"

ACCESS_TIERS = (FREE_GUEST, CME_CREDITS_ONLY, BOARD_REVIEW, CME_ANNUAL)


def _credit_count(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value).strip())
    except ValueError:
        return 0


def resolve_access_tier(
    cme_annual_active: bool,
    board_review_active: bool,
    credits_available: Any,
) -> str:
    """Map entitlement flags to the canonical tier.

    Precedence: cme_annual > board_review > cme_credits_only > free_guest.
    """
    if cme_annual_active:
        return CME_ANNUAL
    if board_review_active:
        return BOARD_REVIEW
    if _credit_count(credits_available) > 0:
        return CME_CREDITS_ONLY
    return FREE_GUEST


def access_tier_for_record(record: Mapping[str, Any]) -> str:
    return resolve_access_tier(
        record.get("cmeSubscriptionActive") is True,
        record.get("boardReviewActive") is True,
        record.get("cmeCreditsAvailable"),
    )

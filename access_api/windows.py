"""Subscription window resolution for drift detection.

A window answers "until when does this bucket grant access, and does the
stored flag agree with that?". The end date comes from, in order: the
subscription end date, the bucket's own trial end, then the sibling bucket's
trial end when the stored trial type matches this bucket.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .utils.timestamps import millis_to_iso, to_epoch_millis

SOURCE_SUBSCRIPTION = "subscription"
SOURCE_TRIAL = "trial"
SOURCE_ALTERNATE_TRIAL = "alternateTrial"
SOURCE_NONE = "none"


@dataclass(frozen=True)
class BucketFields:
    name: str
    active_field: str
    end_field: str
    trial_field: str
    alt_trial_field: Optional[str]
    trial_type_value: Optional[str]


CME_BUCKET = BucketFields(
    name="cme",
    active_field="cmeSubscriptionActive",
    end_field="cmeSubscriptionEndDate",
    trial_field="cmeSubscriptionTrialEndDate",
    alt_trial_field="boardReviewTrialEndDate",
    trial_type_value="cme_annual",
)

BOARD_REVIEW_BUCKET = BucketFields(
    name="boardReview",
    active_field="boardReviewActive",
    end_field="boardReviewSubscriptionEndDate",
    trial_field="boardReviewTrialEndDate",
    alt_trial_field="cmeSubscriptionTrialEndDate",
    trial_type_value="board_review",
)


@dataclass(frozen=True)
class SubscriptionWindow:
    active_flag: bool
    still_active: bool
    fallback_active: bool
    effective_end_ms: int
    end_source: str
    used_trial_fallback: bool

    def to_response(self) -> Dict[str, Any]:
        has_end = self.effective_end_ms > 0
        return {
            "activeFlag": self.active_flag,
            "stillActive": self.still_active,
            "fallbackActive": self.fallback_active,
            "effectiveEndMillis": self.effective_end_ms if has_end else None,
            "effectiveEndIso": millis_to_iso(self.effective_end_ms) if has_end else None,
            "endSource": self.end_source,
            "usedTrialFallback": self.used_trial_fallback,
        }


def resolve_effective_end(record: Mapping[str, Any], bucket: BucketFields) -> Tuple[int, str]:
    """Return ``(effective_end_ms, source)``; ``(0, "none")`` when unknown."""
    subscription_end = to_epoch_millis(record.get(bucket.end_field))
    if subscription_end > 0:
        return subscription_end, SOURCE_SUBSCRIPTION

    trial_end = to_epoch_millis(record.get(bucket.trial_field))
    if trial_end > 0:
        return trial_end, SOURCE_TRIAL

    has_matching_trial = bool(record.get("hasActiveTrial")) and (
        not bucket.trial_type_value or record.get("trialType") == bucket.trial_type_value
    )
    if has_matching_trial and bucket.alt_trial_field:
        alt_trial_end = to_epoch_millis(record.get(bucket.alt_trial_field))
        if alt_trial_end > 0:
            return alt_trial_end, SOURCE_ALTERNATE_TRIAL

    return 0, SOURCE_NONE


def compute_subscription_window(
    record: Mapping[str, Any],
    bucket: BucketFields,
    now_ms: int,
) -> SubscriptionWindow:
    effective_end, source = resolve_effective_end(record, bucket)
    active_flag = bool(record.get(bucket.active_field))
    has_end = effective_end > 0
    end_in_future = has_end and effective_end > now_ms
    end_in_past = has_end and effective_end <= now_ms

    return SubscriptionWindow(
        active_flag=active_flag,
        still_active=active_flag,
        fallback_active=(not active_flag and end_in_future) or (active_flag and end_in_past),
        effective_end_ms=effective_end,
        end_source=source,
        used_trial_fallback=source in (SOURCE_TRIAL, SOURCE_ALTERNATE_TRIAL),
    )


def window_has_lapsed(window: SubscriptionWindow, now_ms: int) -> bool:
    """Flag says active but a known end is already in the past."""
    return window.active_flag and 0 < window.effective_end_ms <= now_ms

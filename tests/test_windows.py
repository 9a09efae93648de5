"""Subscription window resolution and drift signals."""

from datetime import datetime, timedelta, timezone

from access_api.utils.timestamps import millis_to_iso, parse_epoch_millis, to_epoch_millis
from access_api.windows import (
    BOARD_REVIEW_BUCKET,
    CME_BUCKET,
    SOURCE_ALTERNATE_TRIAL,
    SOURCE_NONE,
    SOURCE_SUBSCRIPTION,
    SOURCE_TRIAL,
    compute_subscription_window,
    resolve_effective_end,
    window_has_lapsed,
)

NOW_MS = 1_750_000_000_000
DAY_MS = 86_400_000


def _dt(ms):
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class TestEffectiveEnd:
    def test_subscription_end_wins(self):
        record = {
            "cmeSubscriptionEndDate": _dt(NOW_MS + DAY_MS),
            "cmeSubscriptionTrialEndDate": _dt(NOW_MS + 2 * DAY_MS),
        }
        assert resolve_effective_end(record, CME_BUCKET) == (NOW_MS + DAY_MS, SOURCE_SUBSCRIPTION)

    def test_own_trial_end_used_when_no_subscription_end(self):
        record = {"boardReviewTrialEndDate": _dt(NOW_MS + DAY_MS)}
        assert resolve_effective_end(record, BOARD_REVIEW_BUCKET) == (NOW_MS + DAY_MS, SOURCE_TRIAL)

    def test_sibling_trial_requires_matching_trial_type(self):
        record = {
            "hasActiveTrial": True,
            "trialType": "cme_annual",
            "boardReviewTrialEndDate": _dt(NOW_MS + DAY_MS),
        }
        assert resolve_effective_end(record, CME_BUCKET) == (NOW_MS + DAY_MS, SOURCE_ALTERNATE_TRIAL)

        record["trialType"] = "board_review"
        assert resolve_effective_end(record, CME_BUCKET) == (0, SOURCE_NONE)

    def test_sibling_trial_ignored_without_active_trial(self):
        record = {"trialType": "cme_annual", "boardReviewTrialEndDate": _dt(NOW_MS + DAY_MS)}
        assert resolve_effective_end(record, CME_BUCKET) == (0, SOURCE_NONE)

    def test_zero_and_garbage_ends_are_unknown(self):
        record = {"cmeSubscriptionEndDate": 0, "cmeSubscriptionTrialEndDate": "not a date"}
        assert resolve_effective_end(record, CME_BUCKET) == (0, SOURCE_NONE)


class TestWindow:
    def test_active_flag_with_future_end_is_consistent(self):
        record = {"cmeSubscriptionActive": True, "cmeSubscriptionEndDate": _dt(NOW_MS + DAY_MS)}
        window = compute_subscription_window(record, CME_BUCKET, NOW_MS)
        assert window.active_flag is True
        assert window.fallback_active is False
        assert window_has_lapsed(window, NOW_MS) is False

    def test_flag_off_but_end_in_future_is_drift(self):
        record = {"boardReviewActive": False, "boardReviewSubscriptionEndDate": _dt(NOW_MS + DAY_MS)}
        window = compute_subscription_window(record, BOARD_REVIEW_BUCKET, NOW_MS)
        assert window.fallback_active is True
        assert window_has_lapsed(window, NOW_MS) is False

    def test_flag_on_but_end_in_past_is_drift_and_lapsed(self):
        record = {"boardReviewActive": True, "boardReviewSubscriptionEndDate": _dt(NOW_MS - DAY_MS)}
        window = compute_subscription_window(record, BOARD_REVIEW_BUCKET, NOW_MS)
        assert window.fallback_active is True
        assert window_has_lapsed(window, NOW_MS) is True

    def test_flag_on_without_known_end_never_lapses(self):
        window = compute_subscription_window({"cmeSubscriptionActive": True}, CME_BUCKET, NOW_MS)
        assert window.fallback_active is False
        assert window_has_lapsed(window, NOW_MS) is False

    def test_response_shape(self):
        record = {"cmeSubscriptionTrialEndDate": _dt(NOW_MS + DAY_MS)}
        payload = compute_subscription_window(record, CME_BUCKET, NOW_MS).to_response()
        assert payload == {
            "activeFlag": False,
            "stillActive": False,
            "fallbackActive": True,
            "effectiveEndMillis": NOW_MS + DAY_MS,
            "effectiveEndIso": millis_to_iso(NOW_MS + DAY_MS),
            "endSource": SOURCE_TRIAL,
            "usedTrialFallback": True,
        }

    def test_response_without_end(self):
        payload = compute_subscription_window({}, CME_BUCKET, NOW_MS).to_response()
        assert payload["effectiveEndMillis"] is None
        assert payload["effectiveEndIso"] is None
        assert payload["endSource"] == SOURCE_NONE


class TestTimestamps:
    def test_stored_value_shapes(self):
        dt = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        expected = int(dt.timestamp() * 1000)
        assert to_epoch_millis(dt) == expected
        assert to_epoch_millis(expected) == expected
        assert to_epoch_millis("2025-01-02T03:04:05Z") == expected
        assert to_epoch_millis({"seconds": expected // 1000, "nanoseconds": 0}) == expected
        assert to_epoch_millis(None) == 0
        assert to_epoch_millis(True) == 0

    def test_epoch_seconds_are_scaled(self):
        assert parse_epoch_millis(None, 0, 1_700_000_000) == 1_700_000_000_000
        assert parse_epoch_millis("1700000000000") == 1_700_000_000_000

    def test_iso_formatting(self):
        assert millis_to_iso(1_700_000_000_123) == "2023-11-14T22:13:20.123Z"
        assert millis_to_iso(0) is None

    def test_naive_datetime_end_is_treated_as_utc(self):
        naive = datetime(2030, 1, 1) + timedelta(hours=1)
        assert to_epoch_millis(naive.isoformat()) == int(naive.replace(tzinfo=timezone.utc).timestamp() * 1000)

    def test_non_finite_numbers_are_ignored(self):
        assert parse_epoch_millis(float("inf"), "Infinity", float("nan"), 1_700_000_000) == 1_700_000_000_000
        assert parse_epoch_millis(float("-inf")) is None
        assert to_epoch_millis(float("inf")) == 0

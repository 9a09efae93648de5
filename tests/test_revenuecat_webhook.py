"""POST /api/webhooks/revenuecat end to end against the in-memory Firestore."""

from dataclasses import replace

import pytest

from access_api.config import get_config
from access_api.revenuecat_client import SubscriberFetchError
from access_api.routers import webhooks
from access_api.verification import compute_revenuecat_signature

from conftest import RC_AUTH_SECRET, RC_SIGNING_SECRET, encode, millis_from_now

URL = "/api/webhooks/revenuecat"
AUTH = {"Authorization": f"Bearer {RC_AUTH_SECRET}", "Content-Type": "application/json"}


def _body(event_type="RENEWAL", event_id="evt-1", app_user_id="uid-1", **extra):
    event = {"type": event_type, "app_user_id": app_user_id, **extra}
    if event_id:
        event["id"] = event_id
    return {"api_version": "1.0", "event": event}


def _cme_snapshot(days=300):
    return {"subscriber": {"subscriptions": {"medswipe.cme.annual": {"expires_date_ms": millis_from_now(days)}}}}


def _post(client, body, headers=AUTH):
    return client.post(URL, content=encode(body), headers=headers)


class TestRevenueCatWebhook:
    def test_snapshot_drives_entitlements(self, client, db, revenuecat_client):
        db.seed("users/uid-1", {"accessTier": "free_guest", "cmeCreditsAvailable": 0})
        revenuecat_client.snapshots["uid-1"] = _cme_snapshot()

        response = _post(client, _body())

        assert response.status_code == 200
        assert response.json() == {"received": True}
        record = db.data("users/uid-1")
        assert record["accessTier"] == "cme_annual"
        assert record["cmeSubscriptionActive"] is True
        assert record["boardReviewActive"] is True
        assert record["boardReviewTier"] == "Granted by CME Annual"
        assert record["lastRevenueCatEventId"] == "evt-1"
        assert record["lastRevenueCatEventType"] == "RENEWAL"
        assert "lastRevenueCatEventAt" in record
        assert db.ids("users/uid-1/revenuecat_events") == ["evt-1"]

    def test_replay_is_acknowledged_without_refetch(self, client, db, revenuecat_client):
        revenuecat_client.snapshots["uid-1"] = _cme_snapshot()
        _post(client, _body())

        response = _post(client, _body())

        assert response.json() == {"received": True, "ignored": "duplicate_event"}
        assert revenuecat_client.calls == ["uid-1"]

    def test_credit_purchase_replayed_grants_once(self, client, db, revenuecat_client):
        db.seed("users/uid-1", {"cmeCreditsAvailable": 1})
        revenuecat_client.snapshots["uid-1"] = {"subscriber": {"subscriptions": {}}}
        body = _body("NON_RENEWING_PURCHASE", "evt-credit", product_id="medswipe.cme.credits")

        for _ in range(3):
            assert _post(client, body).status_code == 200

        record = db.data("users/uid-1")
        assert record["cmeCreditsAvailable"] == 2
        assert record["accessTier"] == "cme_credits_only"
        assert db.ids("users/uid-1/revenuecat_events") == ["evt-credit"]

    def test_non_finite_numbers_in_event_are_tolerated(self, client, db, revenuecat_client):
        revenuecat_client.snapshots["uid-1"] = {"subscriber": {"subscriptions": {}}}
        body = _body(
            "NON_RENEWING_PURCHASE",
            "evt-inf",
            product_id="medswipe.cme.credits",
            purchased_at_ms=float("inf"),
            store_transaction={"quantity": float("inf")},
        )

        assert _post(client, body).json() == {"received": True}
        assert db.data("users/uid-1")["cmeCreditsAvailable"] == 1

    def test_hmac_signature_is_accepted(self, client, db, revenuecat_client):
        revenuecat_client.snapshots["uid-1"] = _cme_snapshot()
        raw = encode(_body())
        signature = compute_revenuecat_signature(raw, RC_SIGNING_SECRET)

        response = client.post(URL, content=raw, headers={"X-RevenueCat-Signature": signature})

        assert response.status_code == 200
        assert db.data("users/uid-1")["accessTier"] == "cme_annual"

    def test_wrong_secret_is_rejected_without_side_effects(self, client, db, revenuecat_client):
        response = _post(client, _body(), headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert revenuecat_client.calls == []
        assert db.writes == 0

    def test_missing_secrets_acknowledge_and_drop(self, app, client, db, service_config, revenuecat_client):
        unconfigured = replace(service_config, revenuecat_auth_secret="", revenuecat_signature_secret="")
        app.dependency_overrides[get_config] = lambda: unconfigured

        response = _post(client, _body())

        assert response.status_code == 200
        assert response.json() == {"received": True, "error": "webhook_secret_not_configured"}
        assert revenuecat_client.calls == []
        assert db.writes == 0

    def test_wrong_method(self, client):
        assert client.get(URL).status_code == 405

    @pytest.mark.parametrize("body, expected", [
        (_body(app_user_id="$RCAnonymousID:abc"), {"received": True, "ignored": "anonymous_app_user_id"}),
        ({"event": {"type": "TRANSFER", "id": "evt-t"}}, {"received": True, "ignored": "transfer_without_app_user_id"}),
        ({"event": {"type": "RENEWAL", "id": "evt-x"}}, {"received": True, "error": "missing_app_user_id"}),
        ({"hello": "world"}, {"received": True, "ignored": "unrecognized_payload"}),
    ])
    def test_unresolvable_users_are_acknowledged(self, client, db, revenuecat_client, body, expected):
        response = _post(client, body)

        assert response.status_code == 200
        assert response.json() == expected
        assert revenuecat_client.calls == []
        assert db.writes == 0

    def test_transfer_targets_destination_user(self, client, db, revenuecat_client):
        revenuecat_client.snapshots["new-uid"] = _cme_snapshot()
        body = {"event": {"type": "TRANSFER", "id": "evt-t", "transferred_from": ["old-uid"],
                          "transferred_to": ["new-uid"]}}

        assert _post(client, body).json() == {"received": True}
        assert db.data("users/new-uid")["accessTier"] == "cme_annual"
        assert db.data("users/old-uid") is None

    def test_snapshot_failure_is_acknowledged(self, client, db, revenuecat_client):
        revenuecat_client.error = SubscriberFetchError("RevenueCat API returned HTTP 500", status_code=500)

        response = _post(client, _body())

        assert response.json() == {"received": True, "error": "subscriber_fetch_failed"}
        assert db.data("users/uid-1") is None
        assert db.ids("users/uid-1/revenuecat_events") == []

    def test_write_failure_is_acknowledged(self, client, db, revenuecat_client, monkeypatch):
        revenuecat_client.snapshots["uid-1"] = _cme_snapshot()

        def broken_write(*args, **kwargs):
            raise RuntimeError("firestore unavailable")

        monkeypatch.setattr(webhooks, "write_record", broken_write)

        response = _post(client, _body())

        assert response.json() == {"received": True, "error": "firestore_update_failed"}
        assert db.ids("users/uid-1/revenuecat_events") == []

    def test_missing_event_id_still_processes(self, client, db, revenuecat_client):
        revenuecat_client.snapshots["uid-1"] = _cme_snapshot()

        response = _post(client, _body(event_id=None))

        assert response.json() == {"received": True}
        record = db.data("users/uid-1")
        assert record["lastRevenueCatEventId"].startswith("uid-1-")
        assert db.ids("users/uid-1/revenuecat_events") == [record["lastRevenueCatEventId"]]

    def test_expired_snapshot_downgrades(self, client, db, revenuecat_client):
        db.seed("users/uid-1", {
            "accessTier": "cme_annual",
            "cmeSubscriptionActive": True,
            "boardReviewActive": True,
            "boardReviewTier": "Granted by CME Annual",
            "hasActiveTrial": True,
            "trialType": "cme_annual",
        })
        revenuecat_client.snapshots["uid-1"] = _cme_snapshot(days=-1)

        _post(client, _body("EXPIRATION", "evt-exp"))

        record = db.data("users/uid-1")
        assert record["accessTier"] == "free_guest"
        assert record["cmeSubscriptionActive"] is False
        assert record["boardReviewActive"] is False
        assert record["boardReviewTier"] == "Expired/Canceled"
        assert "hasActiveTrial" not in record
        assert "trialType" not in record

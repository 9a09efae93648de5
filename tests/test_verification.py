"""Webhook authentication: RevenueCat bearer/HMAC, Stripe signatures."""

import time

from access_api.verification import (
    REASON_EMPTY_BODY,
    REASON_MISMATCH,
    REASON_MISSING_CREDENTIALS,
    REASON_NOT_CONFIGURED,
    REASON_OK_BEARER,
    REASON_OK_SIGNATURE,
    compute_revenuecat_signature,
    verify_revenuecat_request,
    verify_stripe_signature,
)

from conftest import STRIPE_WEBHOOK_SECRET, stripe_signature_header

BODY = b'{"event": {"id": "e1"}}'


class TestRevenueCatVerification:
    def test_bearer_secret_matches(self):
        result = verify_revenuecat_request(BODY, {"authorization": "Bearer s3cret"}, "s3cret", "")
        assert result
        assert result.reason == REASON_OK_BEARER

    def test_raw_authorization_value_matches(self):
        assert verify_revenuecat_request(BODY, {"authorization": "s3cret"}, "s3cret", "")

    def test_signature_secret_doubles_as_bearer(self):
        assert verify_revenuecat_request(BODY, {"authorization": "Bearer signing"}, "", "signing")

    def test_hmac_signature_matches(self):
        signature = compute_revenuecat_signature(BODY, "signing")
        result = verify_revenuecat_request(BODY, {"x-revenuecat-signature": signature}, "other", "signing")
        assert result
        assert result.reason == REASON_OK_SIGNATURE

    def test_either_scheme_is_enough(self):
        signature = compute_revenuecat_signature(BODY, "signing")
        headers = {"authorization": "Bearer wrong", "x-revenuecat-signature": signature}
        assert verify_revenuecat_request(BODY, headers, "auth", "signing")

    def test_tampered_body_fails(self):
        signature = compute_revenuecat_signature(BODY, "signing")
        result = verify_revenuecat_request(BODY + b" ", {"x-revenuecat-signature": signature}, "", "signing")
        assert not result
        assert result.reason == REASON_MISMATCH

    def test_empty_body_with_signature_fails(self):
        result = verify_revenuecat_request(b"", {"x-revenuecat-signature": "abc"}, "", "signing")
        assert result.reason == REASON_EMPTY_BODY

    def test_missing_headers(self):
        result = verify_revenuecat_request(BODY, {}, "auth", "signing")
        assert result.reason == REASON_MISSING_CREDENTIALS

    def test_fails_closed_without_secrets(self):
        result = verify_revenuecat_request(BODY, {"authorization": "Bearer anything"}, "", "")
        assert not result
        assert result.reason == REASON_NOT_CONFIGURED


class TestStripeVerification:
    def test_valid_signature(self):
        header = stripe_signature_header(BODY)
        assert verify_stripe_signature(BODY, header, STRIPE_WEBHOOK_SECRET) is True

    def test_wrong_secret(self):
        header = stripe_signature_header(BODY, secret="whsec_other")
        assert verify_stripe_signature(BODY, header, STRIPE_WEBHOOK_SECRET) is False

    def test_stale_timestamp(self):
        header = stripe_signature_header(BODY, timestamp=time.time() - 3600)
        assert verify_stripe_signature(BODY, header, STRIPE_WEBHOOK_SECRET, tolerance=300) is False

    def test_missing_header_or_secret(self):
        assert verify_stripe_signature(BODY, None, STRIPE_WEBHOOK_SECRET) is False
        assert verify_stripe_signature(BODY, stripe_signature_header(BODY), "") is False

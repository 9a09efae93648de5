"""Inbound webhook authentication.

RevenueCat requests are accepted when either the bearer secret or the
base64 HMAC-SHA256 ``X-RevenueCat-Signature`` matches. Stripe requests are
checked with the Stripe SDK's signature verifier.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

import stripe

logger = logging.getLogger("access_api.verification")

REASON_OK_BEARER = "bearer"
REASON_OK_SIGNATURE = "signature"
REASON_NOT_CONFIGURED = "secrets_not_configured"
REASON_MISSING_CREDENTIALS = "missing_credentials"
REASON_MISMATCH = "credentials_mismatch"
REASON_EMPTY_BODY = "empty_body"


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: str

    def __bool__(self) -> bool:
        return self.ok


def _strip_bearer(value: Optional[str]) -> str:
    value = (value or "").strip()
    if value.startswith("Bearer "):
        return value[7:].strip()
    return value


def _constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def compute_revenuecat_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_revenuecat_request(
    raw_body: bytes,
    headers: Mapping[str, str],
    auth_secret: Optional[str],
    signature_secret: Optional[str],
) -> VerificationResult:
    """Check a RevenueCat webhook against the configured secrets.

    ``auth_secret`` falls back to ``signature_secret`` when empty. Either
    scheme matching is sufficient. With no secret configured at all the
    request is rejected.
    """
    signature_secret = _strip_bearer(signature_secret)
    effective_auth_secret = _strip_bearer(auth_secret) or signature_secret

    if not effective_auth_secret and not signature_secret:
        logger.error(
            "RevenueCat webhook secrets are not configured "
            "(REVENUECAT_WEBHOOK_AUTH_HEADER / REVENUECAT_WEBHOOK_SECRET)"
        )
        return VerificationResult(False, REASON_NOT_CONFIGURED)

    header_secret = (headers.get("authorization") or "").strip()
    signature_header = (headers.get("x-revenuecat-signature") or "").strip()

    if header_secret:
        if _constant_time_equals(_strip_bearer(header_secret), effective_auth_secret):
            return VerificationResult(True, REASON_OK_BEARER)
        logger.warning("RevenueCat webhook authorization header did not match")

    if signature_header:
        if not signature_secret:
            logger.warning("X-RevenueCat-Signature present but REVENUECAT_WEBHOOK_SECRET is not configured")
        elif not raw_body:
            logger.warning("Empty body on signed RevenueCat webhook")
            return VerificationResult(False, REASON_EMPTY_BODY)
        else:
            expected = compute_revenuecat_signature(raw_body, signature_secret)
            if _constant_time_equals(signature_header, expected):
                return VerificationResult(True, REASON_OK_SIGNATURE)
            logger.warning("RevenueCat webhook signature verification failed")

    if not header_secret and not signature_header:
        logger.warning("RevenueCat webhook missing Authorization and X-RevenueCat-Signature headers")
        return VerificationResult(False, REASON_MISSING_CREDENTIALS)

    return VerificationResult(False, REASON_MISMATCH)


def verify_stripe_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance: int = 300,
) -> bool:
    """True when ``Stripe-Signature`` is valid for ``raw_body``."""
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured")
        return False
    if not signature_header:
        logger.warning("Stripe webhook missing Stripe-Signature header")
        return False
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Stripe webhook body is not valid UTF-8")
        return False
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        return False
    return True

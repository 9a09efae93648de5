"""Provider webhook router - RevenueCat and Stripe.

Endpoints:
    POST /api/webhooks/revenuecat - Mobile store purchases via RevenueCat
    POST /api/webhooks/stripe     - Web purchases via Stripe
    GET  /api/webhooks/stripe     - Liveness probe used by the Stripe dashboard

Both providers deliver at least once and out of order, so every write is
guarded by the per-user idempotency ledger and recomputes the access tier
from the merged record. Once the caller is authenticated the handlers always
acknowledge with 200; a non-2xx would only make the provider retry a payload
we already logged.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from google.cloud import firestore

from ..catalog import ProductCatalog, get_catalog
from ..config import ServiceConfig, get_config
from ..dependencies import get_firestore, get_revenuecat_client, get_stripe_client
from ..ledger import REVENUECAT_EVENTS, IdempotencyLedger
from ..middleware.rate_limit import rate_limit_exempt
from ..normalizer import normalize_revenuecat_event, normalize_stripe_event
from ..records import load_record, write_record
from ..revenuecat_client import RevenueCatClient, SubscriberFetchError
from ..stripe_client import StripeClient
from ..stripe_events import StripeEventProcessor
from ..transformer import transform_subscriber_snapshot
from ..utils.client_ip import get_client_ip
from ..utils.security_logger import security_logger
from ..utils.timestamps import now_millis
from ..verification import verify_revenuecat_request, verify_stripe_signature

router = APIRouter()
logger = logging.getLogger("access_api.webhooks")

SUBSCRIBER_FETCH_FAILED = "subscriber_fetch_failed"
FIRESTORE_UPDATE_FAILED = "firestore_update_failed"
SECRET_NOT_CONFIGURED = "webhook_secret_not_configured"
DUPLICATE_EVENT = "duplicate_event"


def _ack(**extra: Any) -> JSONResponse:
    payload: Dict[str, Any] = {"received": True}
    payload.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=200, content=payload)


def _decode_json(raw_body: bytes) -> Optional[Any]:
    if not raw_body:
        return None
    try:
        return json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        return None


# =============================================================================
# REVENUECAT
# =============================================================================

@router.post("/webhooks/revenuecat")
@rate_limit_exempt
async def revenuecat_webhook(
    request: Request,
    config: ServiceConfig = Depends(get_config),
    db: firestore.Client = Depends(get_firestore),
    revenuecat: RevenueCatClient = Depends(get_revenuecat_client),
    catalog: ProductCatalog = Depends(get_catalog),
):
    """Reconcile a user's entitlements from a RevenueCat event.

    The webhook body only tells us *who* changed; the subscriber snapshot
    pulled from the RevenueCat REST API is the source of truth for *what*
    they own.
    """
    raw_body = await request.body()

    if not config.revenuecat_secrets_configured:
        logger.error("RevenueCat webhook received but no webhook secret is configured; event dropped")
        return _ack(error=SECRET_NOT_CONFIGURED)

    verification = verify_revenuecat_request(
        raw_body,
        {k.lower(): v for k, v in request.headers.items()},
        config.revenuecat_auth_secret,
        config.revenuecat_signature_secret,
    )
    if not verification:
        security_logger.webhook_rejected(
            ip=get_client_ip(request),
            provider="revenuecat",
            reason=verification.reason,
            path=request.url.path,
        )
        return PlainTextResponse("Unauthorized", status_code=401)

    try:
        body = _decode_json(raw_body)
        event = normalize_revenuecat_event(body)

        if event.ignored_reason:
            log = logger.warning if event.ignored_reason != "transfer_without_app_user_id" else logger.info
            log(
                "Ignoring RevenueCat webhook reason=%s event_type=%s event_id=%s",
                event.ignored_reason,
                event.event_type,
                event.event_id,
            )
            return _ack(ignored=event.ignored_reason)

        if event.error_reason:
            logger.warning(
                "RevenueCat webhook missing app_user_id event_type=%s event_id=%s root_keys=%s",
                event.event_type,
                event.event_id,
                sorted(body) if isinstance(body, dict) else None,
            )
            return _ack(error=event.error_reason)

        uid = event.user_id
        ledger = IdempotencyLedger(db, REVENUECAT_EVENTS)
        if event.event_id:
            if ledger.has_processed(uid, event.event_id):
                logger.info("Skipping RevenueCat event already processed uid=%s event_id=%s", uid, event.event_id)
                return _ack(ignored=DUPLICATE_EVENT)
        else:
            logger.warning("RevenueCat webhook missing event id; continuing without idempotency uid=%s", uid)

        logger.info(
            "Processing RevenueCat webhook uid=%s event_type=%s event_id=%s transfer_from=%s",
            uid,
            event.event_type,
            event.event_id,
            event.transfer_from,
        )

        try:
            snapshot = revenuecat.fetch_subscriber(uid)
        except SubscriberFetchError as exc:
            logger.error(
                "RevenueCat subscriber fetch failed uid=%s status=%s: %s",
                uid,
                exc.status_code,
                exc,
            )
            return _ack(error=SUBSCRIBER_FETCH_FAILED)

        now_ms = now_millis()
        effective_event_id = event.event_id or f"{uid}-{now_ms}"

        try:
            existing = load_record(db, uid)
            if existing is None:
                logger.warning(
                    "No user document matches RevenueCat app_user_id uid=%s event_id=%s; "
                    "the app_user_id must be the Firebase Auth uid",
                    uid,
                    effective_event_id,
                )
            result = transform_subscriber_snapshot(snapshot, body, existing or {}, catalog, now_ms)
            if not result.has_changes:
                logger.info("RevenueCat webhook mapped no subscriptions or credits uid=%s event_id=%s", uid, effective_event_id)

            updates = dict(result.updates)
            updates["lastRevenueCatEventId"] = effective_event_id
            updates["lastRevenueCatEventType"] = event.event_type
            updates["lastRevenueCatEventAt"] = firestore.SERVER_TIMESTAMP
            write_record(db, uid, updates)
            ledger.record_processed(uid, effective_event_id, event.event_type, result.diagnostic)
        except Exception:
            logger.exception("Firestore update failed for RevenueCat webhook uid=%s event_id=%s", uid, effective_event_id)
            return _ack(error=FIRESTORE_UPDATE_FAILED)

        logger.info(
            "RevenueCat entitlements updated uid=%s event_id=%s access_tier=%s",
            uid,
            effective_event_id,
            updates.get("accessTier"),
        )
        return _ack()
    except Exception:
        logger.exception("Unhandled RevenueCat webhook error")
        return _ack()


# =============================================================================
# STRIPE
# =============================================================================

@router.get("/webhooks/stripe", response_class=PlainTextResponse)
@rate_limit_exempt
async def stripe_webhook_health(request: Request):
    return PlainTextResponse("Webhook OK")


@router.post("/webhooks/stripe", response_class=PlainTextResponse)
@rate_limit_exempt
async def stripe_webhook(
    request: Request,
    config: ServiceConfig = Depends(get_config),
    db: firestore.Client = Depends(get_firestore),
    stripe_client: StripeClient = Depends(get_stripe_client),
):
    """Apply a signed Stripe event to the matching user's entitlements."""
    if not config.stripe_webhook_secret or not config.stripe_secret_key:
        logger.error("Stripe keys missing from environment for webhook")
        return PlainTextResponse("Server mis-configured (webhook keys).", status_code=500)

    raw_body = await request.body()
    signature = request.headers.get("stripe-signature")
    if not verify_stripe_signature(
        raw_body,
        signature,
        config.stripe_webhook_secret,
        config.stripe_webhook_tolerance_sec,
    ):
        security_logger.webhook_rejected(
            ip=get_client_ip(request),
            provider="stripe",
            reason="invalid_signature" if signature else "missing_signature",
            path=request.url.path,
        )
        return PlainTextResponse("Webhook Error: signature verification failed", status_code=400)

    event = normalize_stripe_event(_decode_json(raw_body))
    if event is None:
        return PlainTextResponse("Webhook Error: malformed event payload", status_code=400)

    try:
        outcome = StripeEventProcessor(db, stripe_client, config).handle(event)
    except Exception:
        logger.exception("Stripe webhook processing failed type=%s id=%s", event.event_type, event.event_id)
        return PlainTextResponse("OK (error logged)")

    return PlainTextResponse(outcome.message)

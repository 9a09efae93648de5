"""Stripe webhook event handling.

Each handler resolves the user, builds a merge payload for ``users/{uid}``,
derives ``accessTier`` from the projected record and writes once. Replays are
skipped through the ``stripe_events`` ledger when it is enabled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from google.cloud import firestore

from .access_tier import access_tier_for_record
from .catalog import EXPIRED_LABEL, GRANTED_BY_CME_LABEL, TIER_BOARD_REVIEW, TIER_CME_ANNUAL, TIER_CME_CREDITS
from .config import ServiceConfig
from .ledger import STRIPE_EVENTS, IdempotencyLedger
from .normalizer import StripeEvent
from .records import apply_field_updates, find_uid_by_email, find_uid_by_stripe_customer, load_record, write_record
from .stripe_client import StripeApiError, StripeClient

logger = logging.getLogger("access_api.stripe_events")

DELETE = firestore.DELETE_FIELD

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

ACTIVE_STATUSES = ("active", "trialing")
CME_TRIAL_DAYS = 14
CME_TRIAL_TYPE = "cme_annual_2week_free"
PAYMENT_FAILED_LABEL = "Payment Failed"
PAYMENT_FAILED_CME_LABEL = "Payment Failed (CME Annual)"
INACTIVE_LABELS = (EXPIRED_LABEL, PAYMENT_FAILED_LABEL, PAYMENT_FAILED_CME_LABEL, GRANTED_BY_CME_LABEL)

# Stored trialType values owned by each bucket
BUCKET_TRIAL_TYPES = {
    TIER_BOARD_REVIEW: (TIER_BOARD_REVIEW,),
    TIER_CME_ANNUAL: (TIER_CME_ANNUAL, CME_TRIAL_TYPE),
}

# Board dates that only existed because CME granted them
CASCADE_REVOKED_DATES = {
    "boardReviewSubscriptionEndDate": DELETE,
    "boardReviewTrialEndDate": DELETE,
    "boardReviewWillCancelAtPeriodEnd": False,
}


@dataclass
class StripeOutcome:
    message: str
    uid: Optional[str] = None
    updates: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# HELPERS
# =============================================================================

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _from_unix(value: Any) -> Optional[datetime]:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _metadata(obj: Mapping[str, Any]) -> Dict[str, Any]:
    metadata = obj.get("metadata")
    return dict(metadata) if isinstance(metadata, Mapping) else {}


def _subscription_period(subscription: Mapping[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Current period, preferring the first subscription item."""
    items = subscription.get("items") or {}
    data = items.get("data") if isinstance(items, Mapping) else None
    item0 = data[0] if isinstance(data, list) and data and isinstance(data[0], Mapping) else {}
    start = item0.get("current_period_start")
    end = item0.get("current_period_end")
    if start is None:
        start = subscription.get("current_period_start")
    if end is None:
        end = subscription.get("current_period_end")
    return _from_unix(start), _from_unix(end)


def _has_standalone_board(record: Mapping[str, Any], cme_subscription_id: Optional[str]) -> bool:
    """Board access that comes from its own subscription rather than CME."""
    if record.get("boardReviewActive") is not True:
        return False
    if record.get("boardReviewTier") in INACTIVE_LABELS:
        return False
    board_sub = record.get("boardReviewSubscriptionId")
    return bool(board_sub) and board_sub != cme_subscription_id


def _plan_label(metadata: Mapping[str, Any], *fallbacks: Any) -> str:
    if metadata.get("planName"):
        return str(metadata["planName"])
    for candidate in fallbacks:
        if candidate and candidate not in INACTIVE_LABELS:
            return str(candidate)
    return "Subscription"


def _trial_fields(
    existing: Mapping[str, Any],
    *,
    trialing: bool,
    trial_field: str,
    trial_end: Optional[datetime],
    trial_type: str,
) -> Dict[str, Any]:
    """Trial fields for one bucket.

    ``hasActiveTrial`` and ``trialType`` are shared by both buckets, so they
    are only cleared when the stored trial belongs to this bucket.
    """
    if trialing and trial_end is not None:
        return {trial_field: trial_end, "hasActiveTrial": True, "trialType": trial_type}
    fields: Dict[str, Any] = {trial_field: DELETE}
    if existing.get("trialType") in (None, *BUCKET_TRIAL_TYPES[trial_type]):
        fields["hasActiveTrial"] = DELETE
        fields["trialType"] = DELETE
    return fields


def _finalize(existing: Mapping[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    updates["accessTier"] = access_tier_for_record(apply_field_updates(existing, updates))
    return updates


def _bucket_summary(updates: Mapping[str, Any], active_field: str, id_field: str) -> Optional[Dict[str, Any]]:
    if active_field not in updates:
        return None
    sub_id = updates.get(id_field)
    return {
        "subscriptionId": sub_id if isinstance(sub_id, str) else None,
        "active": updates.get(active_field) is True,
        "source": "stripe",
    }


def _diagnostic(updates: Mapping[str, Any], credits_granted: int = 0) -> Dict[str, Any]:
    return {
        "boardSubscription": _bucket_summary(updates, "boardReviewActive", "boardReviewSubscriptionId"),
        "cmeSubscription": _bucket_summary(updates, "cmeSubscriptionActive", "cmeSubscriptionId"),
        "creditPurchase": {"detected": bool(credits_granted), "creditsGranted": credits_granted},
    }


class StripeEventProcessor:
    """Applies verified Stripe events to entitlement records."""

    def __init__(self, db: firestore.Client, stripe_client: StripeClient, config: ServiceConfig) -> None:
        self.db = db
        self.stripe = stripe_client
        self.config = config
        self.ledger = IdempotencyLedger(db, STRIPE_EVENTS) if config.stripe_ledger_enabled else None

    def handle(self, event: StripeEvent) -> StripeOutcome:
        logger.info("Received Stripe event type=%s id=%s", event.event_type, event.event_id)
        if event.event_type == CHECKOUT_COMPLETED:
            return self.checkout_completed(event)
        if event.event_type in (SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
            return self.subscription_changed(event)
        if event.event_type == INVOICE_PAYMENT_FAILED:
            return self.invoice_payment_failed(event)
        logger.info("Stripe event type=%s id=%s not handled", event.event_type, event.event_id)
        return StripeOutcome("OK (event not handled)")

    # -------------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------------

    def _already_processed(self, uid: str, event: StripeEvent) -> bool:
        if self.ledger is None:
            return False
        if self.ledger.has_processed(uid, event.event_id):
            logger.info("Skipping Stripe event already processed uid=%s event_id=%s", uid, event.event_id)
            return True
        return False

    def _commit(self, uid: str, event: StripeEvent, updates: Dict[str, Any], diagnostic: Dict[str, Any]) -> None:
        write_record(self.db, uid, updates)
        if self.ledger is not None:
            self.ledger.record_processed(uid, event.event_id, event.event_type, diagnostic)
        logger.info(
            "Entitlements updated uid=%s event_type=%s access_tier=%s",
            uid,
            event.event_type,
            updates.get("accessTier"),
        )

    def _base_updates(self, event: StripeEvent) -> Dict[str, Any]:
        return {
            "lastStripeEvent": _now(),
            "lastStripeEventType": event.event_type,
        }

    # -------------------------------------------------------------------------
    # checkout.session.completed
    # -------------------------------------------------------------------------

    def checkout_completed(self, event: StripeEvent) -> StripeOutcome:
        session = event.data_object
        metadata = _metadata(session)
        tier = str(metadata.get("tier") or "unknown")
        paid = session.get("payment_status") == "paid"
        mode = session.get("mode")
        uid = str(session.get("client_reference_id") or "").strip() or None

        customer_details = session.get("customer_details") or {}
        email = session.get("customer_email") or (
            customer_details.get("email") if isinstance(customer_details, Mapping) else None
        )
        if not uid and email:
            uid = find_uid_by_email(self.db, email)
            if not uid:
                logger.warning("No user found for checkout session=%s email=%s", session.get("id"), str(email).lower())
                return StripeOutcome("No user found with provided email")

        logger.info(
            "checkout.session.completed session=%s tier=%s mode=%s uid=%s paid=%s",
            session.get("id"),
            tier,
            mode,
            uid,
            paid,
        )
        if not uid or not paid:
            logger.warning("Checkout session=%s missing uid or unpaid; nothing written", session.get("id"))
            return StripeOutcome("No-op (uid/paid check)", uid=uid)

        if self._already_processed(uid, event):
            return StripeOutcome("OK (duplicate event)", uid=uid)

        existing = load_record(self.db, uid) or {}
        updates = self._base_updates(event)
        updates["isRegistered"] = True
        if session.get("customer"):
            updates["stripeCustomerId"] = session.get("customer")

        credits_granted = 0
        if mode == "payment" and self._is_cme_trial_purchase(session):
            updates.update(self._cme_trial_fields())
            message = "OK (CME trial activated)"
        elif mode == "subscription":
            subscription_id = session.get("subscription")
            if not subscription_id:
                logger.error("Checkout session=%s has no subscription id", session.get("id"))
                return StripeOutcome("No subId in session", uid=uid)
            self._apply_free_year_promo(session, subscription_id)
            try:
                subscription = self.stripe.retrieve_subscription(subscription_id)
            except StripeApiError as exc:
                logger.error("Subscription fetch failed sub=%s: %s %s", subscription_id, exc, exc.details)
                return StripeOutcome("Sub fetch failed", uid=uid)
            updates.update(self._checkout_subscription_fields(tier, metadata, subscription_id, subscription, existing))
            message = "OK (checkout.session.completed)"
        elif mode == "payment":
            if tier == TIER_CME_CREDITS:
                credits_granted = self._purchased_credits(session, metadata)
                updates["cmeCreditsAvailable"] = firestore.Increment(credits_granted)
                updates["lastCmeCreditPurchaseDate"] = _now()
            else:
                logger.warning("Unhandled payment tier=%s in checkout session=%s", tier, session.get("id"))
            message = "OK (checkout.session.completed)"
        else:
            logger.warning("Unhandled checkout mode=%s session=%s", mode, session.get("id"))
            message = "OK (checkout.session.completed)"

        _finalize(existing, updates)
        self._commit(uid, event, updates, _diagnostic(updates, credits_granted))
        return StripeOutcome(message, uid=uid, updates=updates)

    def _is_cme_trial_purchase(self, session: Mapping[str, Any]) -> bool:
        trial_price = self.config.stripe_cme_trial_price_id
        if not trial_price or not session.get("id"):
            return False
        try:
            line_items = self.stripe.list_checkout_line_items(session["id"], limit=1)
        except StripeApiError as exc:
            logger.error("Line item fetch failed session=%s: %s", session.get("id"), exc)
            return False
        data = line_items.get("data") or []
        first = data[0] if data and isinstance(data[0], Mapping) else {}
        price = first.get("price") or {}
        return isinstance(price, Mapping) and price.get("id") == trial_price

    def _cme_trial_fields(self) -> Dict[str, Any]:
        start = _now()
        end = start + timedelta(days=CME_TRIAL_DAYS)
        return {
            "cmeSubscriptionActive": True,
            "cmeSubscriptionPlan": "2 Week Free Trial",
            "cmeSubscriptionStartDate": start,
            "cmeSubscriptionEndDate": end,
            "cmeSubscriptionTrialEndDate": end,
            "cmeSubscriptionId": None,
            "boardReviewActive": True,
            "boardReviewTier": "Granted by CME Trial",
            "boardReviewSubscriptionStartDate": start,
            "boardReviewSubscriptionEndDate": end,
            "boardReviewTrialEndDate": end,
            "hasActiveTrial": True,
            "trialType": CME_TRIAL_TYPE,
        }

    def _apply_free_year_promo(self, session: Mapping[str, Any], subscription_id: str) -> None:
        discounts = session.get("discounts") or []
        if not discounts or not isinstance(discounts[0], Mapping):
            return
        promo_id = discounts[0].get("promotion_code")
        if not promo_id:
            return
        try:
            promo = self.stripe.retrieve_promotion_code(promo_id)
            if _metadata(promo).get("freeYear") == "true":
                self.stripe.cancel_at_period_end(subscription_id)
                logger.info("Auto-cancel scheduled for free-year promo sub=%s", subscription_id)
        except StripeApiError as exc:
            logger.error("Free-year auto-cancel failed sub=%s: %s %s", subscription_id, exc, exc.details)

    def _checkout_subscription_fields(
        self,
        tier: str,
        metadata: Mapping[str, Any],
        subscription_id: str,
        subscription: Mapping[str, Any],
        existing: Mapping[str, Any],
    ) -> Dict[str, Any]:
        plan_name = _plan_label(metadata)
        start, end = _subscription_period(subscription)
        trialing = subscription.get("status") == "trialing"
        trial_end = _from_unix(subscription.get("trial_end")) or end
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
        start_value = start or firestore.SERVER_TIMESTAMP
        end_value = end or DELETE

        if tier == TIER_BOARD_REVIEW:
            fields = {
                "boardReviewActive": True,
                "boardReviewTier": plan_name,
                "boardReviewSubscriptionId": subscription_id,
                "boardReviewSubscriptionStartDate": start_value,
                "boardReviewSubscriptionEndDate": end_value,
                "boardReviewWillCancelAtPeriodEnd": cancel_at_period_end,
            }
            fields.update(_trial_fields(
                existing,
                trialing=trialing,
                trial_field="boardReviewTrialEndDate",
                trial_end=trial_end,
                trial_type=TIER_BOARD_REVIEW,
            ))
            return fields

        if tier == TIER_CME_ANNUAL:
            fields = {
                "cmeSubscriptionActive": True,
                "cmeSubscriptionPlan": plan_name,
                "cmeSubscriptionId": subscription_id,
                "cmeSubscriptionStartDate": start_value,
                "cmeSubscriptionEndDate": end_value,
                "cmeSubscriptionWillCancelAtPeriodEnd": cancel_at_period_end,
            }
            fields.update(_trial_fields(
                existing,
                trialing=trialing,
                trial_field="cmeSubscriptionTrialEndDate",
                trial_end=trial_end,
                trial_type=TIER_CME_ANNUAL,
            ))
            if not _has_standalone_board(existing, subscription_id):
                fields.update({
                    "boardReviewActive": True,
                    "boardReviewTier": GRANTED_BY_CME_LABEL,
                    "boardReviewSubscriptionId": subscription_id,
                    "boardReviewSubscriptionStartDate": start_value,
                    "boardReviewSubscriptionEndDate": end_value,
                    "boardReviewWillCancelAtPeriodEnd": cancel_at_period_end,
                    "boardReviewTrialEndDate": trial_end if trialing and trial_end else DELETE,
                })
            return fields

        logger.warning("Unhandled subscription tier=%s for sub=%s", tier, subscription_id)
        return {}

    def _purchased_credits(self, session: Mapping[str, Any], metadata: Mapping[str, Any]) -> int:
        try:
            credits = int(str(metadata.get("credits") or "0").strip())
        except ValueError:
            credits = 0
        if credits > 0:
            return credits
        try:
            line_items = self.stripe.list_checkout_line_items(session["id"], limit=1)
        except (StripeApiError, KeyError) as exc:
            logger.warning("Credit quantity lookup failed session=%s: %s", session.get("id"), exc)
            return 1
        data = line_items.get("data") or []
        quantity = data[0].get("quantity") if data and isinstance(data[0], Mapping) else None
        try:
            return max(int(quantity), 1)
        except (TypeError, ValueError):
            return 1

    # -------------------------------------------------------------------------
    # customer.subscription.updated / deleted
    # -------------------------------------------------------------------------

    def _subscription_tier(self, subscription: Mapping[str, Any], existing: Mapping[str, Any]) -> str:
        tier = _metadata(subscription).get("tier")
        if tier:
            return str(tier)
        sub_id = subscription.get("id")
        if sub_id and existing.get("cmeSubscriptionId") == sub_id:
            return TIER_CME_ANNUAL
        if sub_id and existing.get("boardReviewSubscriptionId") == sub_id:
            return TIER_BOARD_REVIEW
        if existing.get("cmeSubscriptionActive"):
            return TIER_CME_ANNUAL
        if existing.get("boardReviewActive"):
            return TIER_BOARD_REVIEW
        return "unknown"

    def subscription_changed(self, event: StripeEvent) -> StripeOutcome:
        subscription = event.data_object
        customer_id = subscription.get("customer")
        status = subscription.get("status")
        deleted = event.event_type == SUBSCRIPTION_DELETED

        uid = find_uid_by_stripe_customer(self.db, customer_id)
        if not uid:
            logger.warning("No user with stripeCustomerId=%s for %s", customer_id, event.event_type)
            return StripeOutcome("No user for customer ID")

        if self._already_processed(uid, event):
            return StripeOutcome("OK (duplicate event)", uid=uid)

        existing = load_record(self.db, uid) or {}
        metadata = _metadata(subscription)
        tier = self._subscription_tier(subscription, existing)
        is_active = status in ACTIVE_STATUSES and not deleted
        trialing = status == "trialing" and not deleted
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
        start, end = _subscription_period(subscription)
        trial_end = _from_unix(subscription.get("trial_end")) or end

        logger.info(
            "Subscription change sub=%s uid=%s tier=%s status=%s cancel_at_period_end=%s",
            subscription.get("id"),
            uid,
            tier,
            status,
            cancel_at_period_end,
        )

        updates = self._base_updates(event)
        if tier == TIER_BOARD_REVIEW:
            plan_name = _plan_label(metadata, existing.get("boardReviewTier"))
            updates.update({
                "boardReviewActive": is_active,
                "boardReviewTier": plan_name if is_active else EXPIRED_LABEL,
                "boardReviewWillCancelAtPeriodEnd": cancel_at_period_end,
            })
            updates.update(_trial_fields(
                existing,
                trialing=trialing,
                trial_field="boardReviewTrialEndDate",
                trial_end=trial_end,
                trial_type=TIER_BOARD_REVIEW,
            ))
            if is_active:
                updates["boardReviewSubscriptionStartDate"] = start or DELETE
                updates["boardReviewSubscriptionEndDate"] = end or DELETE
        elif tier == TIER_CME_ANNUAL:
            plan_name = _plan_label(metadata, existing.get("cmeSubscriptionPlan"))
            updates.update({
                "cmeSubscriptionActive": is_active,
                "cmeSubscriptionPlan": plan_name if is_active else EXPIRED_LABEL,
                "cmeSubscriptionWillCancelAtPeriodEnd": cancel_at_period_end,
            })
            updates.update(_trial_fields(
                existing,
                trialing=trialing,
                trial_field="cmeSubscriptionTrialEndDate",
                trial_end=trial_end,
                trial_type=TIER_CME_ANNUAL,
            ))
            if is_active:
                updates["cmeSubscriptionStartDate"] = start or DELETE
                updates["cmeSubscriptionEndDate"] = end or DELETE

            if not _has_standalone_board(existing, subscription.get("id")):
                updates.update({
                    "boardReviewActive": is_active,
                    "boardReviewTier": GRANTED_BY_CME_LABEL if is_active else EXPIRED_LABEL,
                    "boardReviewWillCancelAtPeriodEnd": cancel_at_period_end if is_active else False,
                    "boardReviewTrialEndDate": trial_end if trialing and trial_end else DELETE,
                })
                if is_active:
                    if start:
                        updates["boardReviewSubscriptionStartDate"] = start
                    if end:
                        updates["boardReviewSubscriptionEndDate"] = end
                else:
                    updates["boardReviewSubscriptionEndDate"] = DELETE
        else:
            logger.warning("Unhandled subscription tier=%s for %s sub=%s", tier, event.event_type, subscription.get("id"))

        _finalize(existing, updates)
        self._commit(uid, event, updates, _diagnostic(updates))
        return StripeOutcome(f"OK ({event.event_type})", uid=uid, updates=updates)

    # -------------------------------------------------------------------------
    # invoice.payment_failed
    # -------------------------------------------------------------------------

    def invoice_payment_failed(self, event: StripeEvent) -> StripeOutcome:
        invoice = event.data_object
        customer_id = invoice.get("customer")
        subscription_id = invoice.get("subscription")
        if not subscription_id:
            parent = invoice.get("parent") or {}
            details = parent.get("subscription_details") if isinstance(parent, Mapping) else None
            if isinstance(details, Mapping):
                subscription_id = details.get("subscription")

        logger.info("Invoice payment failed sub=%s customer=%s", subscription_id, customer_id)
        if not customer_id or not subscription_id:
            logger.warning("invoice.payment_failed without customer or subscription id")
            return StripeOutcome("Missing info for payment_failed")

        uid = find_uid_by_stripe_customer(self.db, customer_id)
        if not uid:
            logger.warning("No user with stripeCustomerId=%s for invoice.payment_failed", customer_id)
            return StripeOutcome("No user for customer ID (payment_failed)")

        if self._already_processed(uid, event):
            return StripeOutcome("OK (duplicate event)", uid=uid)

        existing = load_record(self.db, uid) or {}
        updates = self._base_updates(event)

        if existing.get("boardReviewSubscriptionId") == subscription_id:
            updates["boardReviewActive"] = False
            updates["boardReviewTier"] = PAYMENT_FAILED_LABEL
            logger.info("Board review marked inactive after payment failure uid=%s", uid)
        if existing.get("cmeSubscriptionId") == subscription_id:
            updates["cmeSubscriptionActive"] = False
            updates["cmeSubscriptionPlan"] = PAYMENT_FAILED_LABEL
            if not _has_standalone_board(existing, subscription_id):
                updates["boardReviewActive"] = False
                updates["boardReviewTier"] = PAYMENT_FAILED_CME_LABEL
                updates.update(CASCADE_REVOKED_DATES)
            logger.info("CME annual marked inactive after payment failure uid=%s", uid)

        _finalize(existing, updates)
        self._commit(uid, event, updates, _diagnostic(updates))
        return StripeOutcome("OK (invoice.payment_failed)", uid=uid, updates=updates)

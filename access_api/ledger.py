"""Per-user idempotency ledger of processed provider events.

``users/{uid}/{collection}/{eventId}`` documents are created once and never
updated. The existence check and the create are not wrapped in a transaction:
two truly concurrent deliveries of the same event can both pass the check.
Entitlement writes are idempotent merges, and the second ``create`` fails
with ``AlreadyExists``, so at most one ledger row is ever written.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore

logger = logging.getLogger("access_api.ledger")

REVENUECAT_EVENTS = "revenuecat_events"
STRIPE_EVENTS = "stripe_events"


class IdempotencyLedger:
    def __init__(self, db: firestore.Client, collection: str) -> None:
        self.db = db
        self.collection = collection

    def _entry_ref(self, uid: str, event_id: str):
        return (
            self.db.collection("users")
            .document(uid)
            .collection(self.collection)
            .document(event_id)
        )

    def has_processed(self, uid: str, event_id: str) -> bool:
        return bool(self._entry_ref(uid, event_id).get().exists)

    def record_processed(
        self,
        uid: str,
        event_id: str,
        event_type: str,
        diagnostic: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Create the ledger entry. Returns ``False`` if it already existed."""
        diagnostic = diagnostic or {}
        entry = {
            "id": event_id,
            "eventType": event_type,
            "processedAt": firestore.SERVER_TIMESTAMP,
            "boardSubscription": diagnostic.get("boardSubscription"),
            "cmeSubscription": diagnostic.get("cmeSubscription"),
            "creditPurchase": diagnostic.get("creditPurchase"),
        }
        try:
            self._entry_ref(uid, event_id).create(entry)
        except AlreadyExists:
            logger.info(
                "Ledger entry already present uid=%s collection=%s event_id=%s",
                uid,
                self.collection,
                event_id,
            )
            return False
        return True

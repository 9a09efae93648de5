"""Shared fixtures: in-memory Firestore, fake provider clients, TestClient."""

import copy
import hashlib
import hmac
import json
import os
import tempfile
import time
from datetime import datetime, timezone

import pytest

os.environ.setdefault("SECURITY_LOG_DIR", tempfile.mkdtemp(prefix="access-security-"))

from fastapi.testclient import TestClient
from google.api_core.exceptions import AlreadyExists, NotFound
from google.cloud import firestore

from access_api.config import ServiceConfig, get_config
from access_api.dependencies import (
    get_firestore,
    get_revenuecat_client,
    get_stripe_client,
    verify_firebase_token,
)
from access_api.main import app as fastapi_app
from access_api.middleware.rate_limit import limiter
from access_api.revenuecat_client import SubscriberFetchError
from access_api.stripe_client import StripeApiError


# =============================================================================
# IN-MEMORY FIRESTORE
# =============================================================================

def _apply_write(existing, data, merge):
    result = dict(existing) if (merge and existing) else {}
    for key, value in data.items():
        if value is firestore.DELETE_FIELD:
            result.pop(key, None)
        elif value is firestore.SERVER_TIMESTAMP:
            result[key] = datetime.now(timezone.utc)
        elif isinstance(value, firestore.Increment):
            current = result.get(key)
            base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
            result[key] = base + value.value
        else:
            result[key] = copy.deepcopy(value)
    return result


class FakeSnapshot:
    def __init__(self, reference, data):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeDocument:
    def __init__(self, store, path):
        self._store = store
        self.path = path

    @property
    def id(self):
        return self.path[-1]

    def collection(self, name):
        return FakeCollection(self._store, self.path + (name,))

    def get(self, transaction=None):
        self._store.reads += 1
        return FakeSnapshot(self, self._store.docs.get(self.path))

    def set(self, data, merge=False):
        self._store.writes += 1
        self._store.docs[self.path] = _apply_write(self._store.docs.get(self.path), data, merge)

    def create(self, data):
        if self.path in self._store.docs:
            raise AlreadyExists(f"Document already exists: {'/'.join(self.path)}")
        self._store.writes += 1
        self._store.docs[self.path] = _apply_write(None, data, False)

    def update(self, data):
        if self.path not in self._store.docs:
            raise NotFound(f"No document to update: {'/'.join(self.path)}")
        self._store.writes += 1
        self._store.docs[self.path] = _apply_write(self._store.docs[self.path], data, True)


class FakeQuery:
    def __init__(self, collection, filters=(), limit=None):
        self._collection = collection
        self._filters = tuple(filters)
        self._limit = limit

    def where(self, field, op, value):
        assert op == "==", "only equality filters are supported"
        return FakeQuery(self._collection, self._filters + ((field, value),), self._limit)

    def limit(self, count):
        return FakeQuery(self._collection, self._filters, count)

    def stream(self):
        matched = []
        for doc in self._collection._documents():
            data = doc._store.docs[doc.path]
            if all(data.get(field) == value for field, value in self._filters):
                matched.append(FakeSnapshot(doc, data))
        self._collection._store.reads += len(matched)
        if self._limit is not None:
            matched = matched[: self._limit]
        return iter(matched)


class FakeCollection:
    def __init__(self, store, path):
        self._store = store
        self.path = path

    def document(self, doc_id):
        return FakeDocument(self._store, self.path + (doc_id,))

    def _documents(self):
        depth = len(self.path) + 1
        return [
            FakeDocument(self._store, path)
            for path in sorted(self._store.docs)
            if len(path) == depth and path[:-1] == self.path
        ]

    def where(self, field, op, value):
        return FakeQuery(self).where(field, op, value)

    def limit(self, count):
        return FakeQuery(self, limit=count)

    def stream(self):
        return FakeQuery(self).stream()


class FakeTransaction:
    def __init__(self, store):
        self._store = store

    def set(self, ref, data, merge=False):
        ref.set(data, merge=merge)

    def update(self, ref, data):
        ref.update(data)


class FakeFirestore:
    """Just enough of ``firestore.Client`` for the entitlement code paths."""

    def __init__(self):
        self.docs = {}
        self.reads = 0
        self.writes = 0

    def collection(self, name):
        return FakeCollection(self, (name,))

    def transaction(self):
        return FakeTransaction(self)

    # Test helpers

    def seed(self, path, data):
        self.docs[tuple(path.split("/"))] = copy.deepcopy(data)

    def data(self, path):
        return self.docs.get(tuple(path.split("/")))

    def ids(self, collection_path):
        prefix = tuple(collection_path.split("/"))
        return sorted(p[-1] for p in self.docs if len(p) == len(prefix) + 1 and p[:-1] == prefix)


# =============================================================================
# FAKE PROVIDER CLIENTS
# =============================================================================

class FakeRevenueCatClient:
    def __init__(self):
        self.snapshots = {}
        self.error = None
        self.calls = []

    def fetch_subscriber(self, app_user_id):
        self.calls.append(app_user_id)
        if self.error is not None:
            raise self.error
        if app_user_id not in self.snapshots:
            raise SubscriberFetchError("RevenueCat API returned HTTP 404", status_code=404)
        return copy.deepcopy(self.snapshots[app_user_id])


class FakeStripeClient:
    def __init__(self):
        self.subscriptions = {}
        self.promotion_codes = {}
        self.line_items = {}
        self.canceled = []
        self.fail_subscription_fetch = False

    def retrieve_subscription(self, subscription_id):
        if self.fail_subscription_fetch or subscription_id not in self.subscriptions:
            raise StripeApiError("Stripe API request failed", status_code=422, code="STRIPE_API_HTTP_ERROR")
        return copy.deepcopy(self.subscriptions[subscription_id])

    def cancel_at_period_end(self, subscription_id):
        self.canceled.append(subscription_id)
        return {"id": subscription_id, "cancel_at_period_end": True}

    def retrieve_promotion_code(self, promotion_code_id):
        return copy.deepcopy(self.promotion_codes.get(promotion_code_id, {}))

    def list_checkout_line_items(self, session_id, limit=10):
        return {"data": copy.deepcopy(self.line_items.get(session_id, []))[:limit]}


# =============================================================================
# FIXTURES
# =============================================================================

RC_AUTH_SECRET = "rc-shared-secret"
RC_SIGNING_SECRET = "rc-signing-secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
CME_TRIAL_PRICE = "price_cme_trial"


@pytest.fixture
def db():
    return FakeFirestore()


@pytest.fixture
def service_config():
    return ServiceConfig(
        revenuecat_auth_secret=RC_AUTH_SECRET,
        revenuecat_signature_secret=RC_SIGNING_SECRET,
        revenuecat_api_key="rc-api-key",
        stripe_secret_key="sk_test_key",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        stripe_cme_trial_price_id=CME_TRIAL_PRICE,
        skip_token_age_check=True,
    )


@pytest.fixture
def revenuecat_client():
    return FakeRevenueCatClient()


@pytest.fixture
def stripe_client():
    return FakeStripeClient()


@pytest.fixture
def auth_claims():
    """Decoded Firebase token returned by the auth override; mutate per test."""
    return {"uid": "user-1", "email": "user1@example.com"}


@pytest.fixture
def app(db, service_config, revenuecat_client, stripe_client, auth_claims):
    fastapi_app.dependency_overrides[get_firestore] = lambda: db
    fastapi_app.dependency_overrides[get_config] = lambda: service_config
    fastapi_app.dependency_overrides[get_revenuecat_client] = lambda: revenuecat_client
    fastapi_app.dependency_overrides[get_stripe_client] = lambda: stripe_client
    fastapi_app.dependency_overrides[verify_firebase_token] = lambda: dict(auth_claims)
    limiter.reset()
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    # No context manager: the lifespan would initialize a real Firebase app.
    return TestClient(app)


# =============================================================================
# HELPERS
# =============================================================================

def stripe_signature_header(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = int(timestamp if timestamp is not None else time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def encode(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


def millis_from_now(days: float) -> int:
    return int((time.time() + days * 86400) * 1000)


@pytest.fixture
def plain_transactions(monkeypatch):
    """Run ``@firestore.transactional`` bodies directly against the fake client."""
    monkeypatch.setattr(firestore, "transactional", lambda fn: fn)

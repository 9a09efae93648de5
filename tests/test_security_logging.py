"""Security audit log and client IP resolution."""

import json

from starlette.requests import Request

from access_api.utils import client_ip
from access_api.utils.security_logger import SECURITY_LOG_FILE


def _last_event():
    lines = SECURITY_LOG_FILE.read_text().splitlines()
    return json.loads(lines[-1])


def _request(headers=None, client=("203.0.113.9", 5000)):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_rejected_webhook_is_audited(client):
    client.post("/api/webhooks/revenuecat", content=b"{}", headers={"Authorization": "Bearer wrong"})

    event = _last_event()
    assert event["event"] == "webhook_rejected"
    assert event["provider"] == "revenuecat"
    assert event["path"] == "/api/webhooks/revenuecat"
    assert "uid" not in event


def test_cross_user_recompute_is_audited(client):
    client.post("/api/entitlements/recompute", json={"uid": "someone-else"})

    event = _last_event()
    assert event["event"] == "permission_denied"
    assert event["uid"] == "user-1"
    assert event["target_uid"] == "someone-else"


def test_proxy_headers_ignored_by_default(monkeypatch):
    monkeypatch.setattr(client_ip, "TRUST_PROXY", False)
    request = _request({"X-Forwarded-For": "198.51.100.1"})
    assert client_ip.get_client_ip(request) == "203.0.113.9"


def test_trusted_proxy_uses_first_forwarded_address(monkeypatch):
    monkeypatch.setattr(client_ip, "TRUST_PROXY", True)
    request = _request({"X-Forwarded-For": "198.51.100.1, 10.0.0.1"})
    assert client_ip.get_client_ip(request) == "198.51.100.1"


def test_missing_client(monkeypatch):
    monkeypatch.setattr(client_ip, "TRUST_PROXY", False)
    assert client_ip.get_client_ip(_request(client=None)) == "unknown"

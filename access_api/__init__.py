"""Entitlement reconciliation service.

FastAPI backend that keeps one canonical access tier per user in sync with
two payment providers:
- RevenueCat webhooks (mobile store purchases, snapshot-driven)
- Stripe webhooks (web checkout and subscription lifecycle)
- Recompute RPC for client-triggered self-healing

Security: provider webhooks are verified by shared secret / signature;
client endpoints require Firebase Auth.
"""

__version__ = "1.0.0"

"""FastAPI dependencies for authentication, Firestore and provider clients.

Handlers never reach for module globals directly; everything they touch
(Firestore client, config, RevenueCat/Stripe clients) arrives through
``Depends`` so tests can override it with ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import firebase_admin
from firebase_admin import auth, credentials, firestore

from .config import ServiceConfig, get_config
from .revenuecat_client import RevenueCatClient
from .stripe_client import StripeClient
from .utils.client_ip import get_client_ip
from .utils.security_logger import security_logger

logger = logging.getLogger("access_api.dependencies")

# Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)


# =============================================================================
# FIREBASE INITIALIZATION
# =============================================================================

_firebase_app: Optional[firebase_admin.App] = None
_firestore_client = None


def get_firebase_app() -> firebase_admin.App:
    """Get or initialize Firebase Admin app."""
    global _firebase_app

    if _firebase_app is not None:
        return _firebase_app

    # Check if already initialized
    try:
        _firebase_app = firebase_admin.get_app()
        return _firebase_app
    except ValueError:
        pass

    service_account_path = get_config().service_account_path
    if service_account_path and Path(service_account_path).exists():
        cred = credentials.Certificate(service_account_path)
        _firebase_app = firebase_admin.initialize_app(cred)
        logger.info("Firebase Admin initialized from service account")
    else:
        # Application Default Credentials (Cloud Run, GCE, gcloud auth)
        _firebase_app = firebase_admin.initialize_app()
        logger.info("Firebase Admin initialized with application default credentials")
    return _firebase_app


def get_firestore() -> firestore.Client:
    """Get Firestore client (singleton)."""
    global _firestore_client

    if _firestore_client is None:
        get_firebase_app()  # Ensure initialized
        _firestore_client = firestore.client()
        logger.info("Firestore client initialized")

    return _firestore_client


# =============================================================================
# PROVIDER CLIENTS
# =============================================================================

def get_revenuecat_client(config: ServiceConfig = Depends(get_config)) -> RevenueCatClient:
    return RevenueCatClient.from_config(config)


def get_stripe_client(config: ServiceConfig = Depends(get_config)) -> StripeClient:
    return StripeClient.from_config(config)


# =============================================================================
# AUTHENTICATION
# =============================================================================

async def verify_firebase_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    config: ServiceConfig = Depends(get_config),
) -> Dict[str, Any]:
    """Verify Firebase ID token from Authorization header.

    Security checks:
    - Valid signature (RS256)
    - Not expired
    - Not revoked
    - Token age < MAX_TOKEN_AGE_SECONDS (force refresh)
    - Not from the future (clock skew attack)

    Returns:
        Decoded token claims including 'uid'

    Raises:
        HTTPException 401 on any auth failure
    """
    if credentials is None:
        _log_auth_failure(request, "missing_auth_header")
        raise HTTPException(401, "Missing Authorization header")

    token = credentials.credentials

    try:
        get_firebase_app()
        decoded = auth.verify_id_token(token, check_revoked=True)
    except auth.RevokedIdTokenError:
        _log_auth_failure(request, "revoked_token")
        raise HTTPException(401, "Token has been revoked")
    except auth.ExpiredIdTokenError:
        _log_auth_failure(request, "expired_token")
        raise HTTPException(401, "Token has expired")
    except auth.InvalidIdTokenError as e:
        _log_auth_failure(request, "invalid_token", error=str(e))
        raise HTTPException(401, "Invalid token")
    except Exception as e:
        _log_auth_failure(request, "auth_error", error=str(e))
        raise HTTPException(401, "Authentication failed")

    if not config.skip_token_age_check:
        now = datetime.now(timezone.utc).timestamp()
        issued_at = decoded.get("iat", 0)

        if now - issued_at > config.max_token_age_seconds:
            _log_auth_failure(request, "token_too_old", uid=decoded.get("uid"))
            raise HTTPException(401, "Token too old, please re-authenticate")

        if issued_at > now + config.clock_skew_seconds:
            _log_auth_failure(request, "future_token", uid=decoded.get("uid"))
            raise HTTPException(401, "Invalid token timestamp")

    return decoded


def _log_auth_failure(request: Request, reason: str, uid: Optional[str] = None, **extra) -> None:
    """Log authentication failure for security monitoring."""
    security_logger.auth_failure(
        ip=get_client_ip(request),
        reason=reason,
        path=request.url.path,
        user_agent=request.headers.get("user-agent", "unknown"),
        uid=uid,
        **extra,
    )

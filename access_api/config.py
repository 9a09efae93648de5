"""Service configuration loaded from the environment.

Every handler receives a ``ServiceConfig`` through the ``get_config``
dependency instead of reading ``os.environ`` on its own, so tests can swap
secrets and feature switches with ``app.dependency_overrides``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Tuple

PACKAGE_DIR = Path(__file__).parent
REPO_DIR = PACKAGE_DIR.parent

DEFAULT_ALLOWED_ORIGINS = (
    "http://localhost:5173",
    "http://localhost:3000",
)


def _bool_env(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _str_env(name: str, default: str = "") -> str:
    return str(os.environ.get(name, default)).strip()


def _float_env(name: str, default: float) -> float:
    raw = _str_env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _strip_bearer(value: str) -> str:
    value = (value or "").strip()
    if value.startswith("Bearer "):
        return value[7:].strip()
    return value


@dataclass(frozen=True)
class ServiceConfig:
    """Immutable view of the environment for one process."""

    # RevenueCat
    revenuecat_auth_secret: str = ""
    revenuecat_signature_secret: str = ""
    revenuecat_api_key: str = ""
    revenuecat_api_base_url: str = "https://api.revenuecat.com/v1"
    revenuecat_api_timeout_sec: float = 20.0

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_timeout_sec: float = 8.0
    stripe_webhook_tolerance_sec: int = 300
    stripe_cme_trial_price_id: str = ""
    stripe_ledger_enabled: bool = True

    # Firebase / HTTP
    service_account_path: str = ""
    max_token_age_seconds: int = 3600
    clock_skew_seconds: int = 300
    skip_token_age_check: bool = False
    debug: bool = False
    allowed_origins: Tuple[str, ...] = field(default=DEFAULT_ALLOWED_ORIGINS)

    @property
    def effective_revenuecat_auth_secret(self) -> str:
        # The signature secret doubles as the bearer secret when no dedicated one is set.
        return self.revenuecat_auth_secret or self.revenuecat_signature_secret

    @property
    def revenuecat_secrets_configured(self) -> bool:
        return bool(self.effective_revenuecat_auth_secret or self.revenuecat_signature_secret)


def load_config() -> ServiceConfig:
    """Build a ``ServiceConfig`` from the current environment."""
    origins = tuple(
        origin.strip().rstrip("/")
        for origin in _str_env("ALLOWED_ORIGINS").split(",")
        if origin.strip()
    )
    return ServiceConfig(
        revenuecat_auth_secret=_strip_bearer(_str_env("REVENUECAT_WEBHOOK_AUTH_HEADER")),
        revenuecat_signature_secret=_strip_bearer(_str_env("REVENUECAT_WEBHOOK_SECRET")),
        revenuecat_api_key=_str_env("REVENUECAT_API_KEY"),
        revenuecat_api_base_url=_str_env("REVENUECAT_API_BASE_URL", "https://api.revenuecat.com/v1").rstrip("/"),
        revenuecat_api_timeout_sec=_float_env("REVENUECAT_API_TIMEOUT_SEC", 20.0),
        stripe_secret_key=_str_env("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_str_env("STRIPE_WEBHOOK_SECRET"),
        stripe_api_timeout_sec=_float_env("STRIPE_API_TIMEOUT_SEC", 8.0),
        stripe_webhook_tolerance_sec=int(_float_env("STRIPE_WEBHOOK_TOLERANCE_SEC", 300)),
        stripe_cme_trial_price_id=_str_env("STRIPE_CME_TRIAL_PRICE_ID"),
        stripe_ledger_enabled=_bool_env("STRIPE_LEDGER_ENABLED", True),
        service_account_path=_str_env(
            "GOOGLE_APPLICATION_CREDENTIALS",
            str(REPO_DIR / "firebase-adminsdk.json"),
        ),
        max_token_age_seconds=int(_float_env("MAX_TOKEN_AGE_SECONDS", 3600)),
        clock_skew_seconds=int(_float_env("CLOCK_SKEW_SECONDS", 300)),
        skip_token_age_check=_bool_env("SKIP_TOKEN_AGE_CHECK", False),
        debug=_bool_env("DEBUG", False),
        allowed_origins=origins or DEFAULT_ALLOWED_ORIGINS,
    )


@lru_cache(maxsize=1)
def get_config() -> ServiceConfig:
    """Process-wide config (FastAPI dependency)."""
    return load_config()

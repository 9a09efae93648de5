"""Minimal Stripe REST client used by the webhook handlers."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional
from urllib import error as url_error
from urllib import parse as url_parse
from urllib import request as url_request

from .config import ServiceConfig

logger = logging.getLogger("access_api.stripe_client")

STRIPE_API_BASE = "https://api.stripe.com/v1"
USER_AGENT = "access-service/1.0"


class StripeApiError(Exception):
    def __init__(
        self,
        message: str,
        *,
        status_code: int = 502,
        code: str = "STRIPE_API_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.details = details or {}


class StripeClient:
    def __init__(self, secret_key: str, timeout: float = 8.0) -> None:
        self.secret_key = secret_key
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "StripeClient":
        return cls(secret_key=config.stripe_secret_key, timeout=config.stripe_api_timeout_sec)

    def _request_form(self, *, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.secret_key:
            raise StripeApiError(
                "Stripe API is not configured",
                status_code=501,
                code="STRIPE_NOT_CONFIGURED",
                details={"required": ["STRIPE_SECRET_KEY"]},
            )

        method = method.upper()
        encoded = url_parse.urlencode(
            {k: str(v) for k, v in (data or {}).items() if v is not None},
            quote_via=url_parse.quote,
        )
        url = f"{STRIPE_API_BASE}/{path.lstrip('/')}"
        body = None
        if method in ("POST", "PUT", "PATCH"):
            body = encoded.encode("utf-8")
        elif encoded:
            url = f"{url}?{encoded}"

        req = url_request.Request(
            url=url,
            method=method,
            data=body,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
        )
        try:
            with url_request.urlopen(req, timeout=self.timeout) as resp:
                body_text = resp.read().decode("utf-8")
                parsed = json.loads(body_text) if body_text else {}
                if not isinstance(parsed, dict):
                    return {}
                return parsed
        except url_error.HTTPError as http_exc:
            details: Dict[str, Any] = {"httpStatus": http_exc.code, "path": path}
            try:
                parsed_error = json.loads(http_exc.read().decode("utf-8") or "{}")
            except (ValueError, OSError):
                parsed_error = {}
            stripe_error = parsed_error.get("error") if isinstance(parsed_error, dict) else None
            if isinstance(stripe_error, dict):
                details["stripeCode"] = stripe_error.get("code")
                details["stripeMessage"] = stripe_error.get("message")
            raise StripeApiError(
                "Stripe API request failed",
                status_code=502 if http_exc.code >= 500 else 422,
                code="STRIPE_API_HTTP_ERROR",
                details=details,
            ) from http_exc
        except url_error.URLError as url_exc:
            raise StripeApiError(
                "Unable to reach Stripe API",
                code="STRIPE_API_UNREACHABLE",
                details={"reason": str(url_exc)},
            ) from url_exc

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request_form(
            method="GET",
            path=f"subscriptions/{url_parse.quote(subscription_id, safe='')}",
        )

    def cancel_at_period_end(self, subscription_id: str) -> Dict[str, Any]:
        return self._request_form(
            method="POST",
            path=f"subscriptions/{url_parse.quote(subscription_id, safe='')}",
            data={"cancel_at_period_end": "true"},
        )

    def retrieve_promotion_code(self, promotion_code_id: str) -> Dict[str, Any]:
        return self._request_form(
            method="GET",
            path=f"promotion_codes/{url_parse.quote(promotion_code_id, safe='')}",
        )

    def list_checkout_line_items(self, session_id: str, limit: int = 10) -> Dict[str, Any]:
        return self._request_form(
            method="GET",
            path=f"checkout/sessions/{url_parse.quote(session_id, safe='')}/line_items",
            data={"limit": limit},
        )

"""RevenueCat REST client - pulls the current subscriber snapshot.

The webhook body only tells us *that* something changed; the subscriber
endpoint tells us the current state. One GET, no retries.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional
from urllib import error as url_error
from urllib import parse as url_parse
from urllib import request as url_request

from .config import ServiceConfig

logger = logging.getLogger("access_api.revenuecat_client")

USER_AGENT = "access-service/1.0"


class SubscriberFetchError(Exception):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RevenueCatClient:
    def __init__(self, api_key: str, base_url: str = "https://api.revenuecat.com/v1", timeout: float = 20.0) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "RevenueCatClient":
        return cls(
            api_key=config.revenuecat_api_key,
            base_url=config.revenuecat_api_base_url,
            timeout=config.revenuecat_api_timeout_sec,
        )

    def subscriber_url(self, app_user_id: str) -> str:
        return f"{self.base_url}/subscribers/{url_parse.quote(app_user_id, safe='')}"

    def fetch_subscriber(self, app_user_id: str) -> Dict[str, Any]:
        """GET /subscribers/{app_user_id}.

        Raises:
            SubscriberFetchError on missing API key, HTTP/network failure or a
            body that is not a JSON object.
        """
        if not self.api_key:
            raise SubscriberFetchError("RevenueCat API key is not configured")

        req = url_request.Request(
            url=self.subscriber_url(app_user_id),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
        )
        try:
            with url_request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
        except url_error.HTTPError as http_exc:
            logger.error(
                "RevenueCat subscriber fetch failed app_user_id=%s status=%s",
                app_user_id,
                http_exc.code,
            )
            raise SubscriberFetchError(
                f"RevenueCat API returned HTTP {http_exc.code}",
                status_code=http_exc.code,
            ) from http_exc
        except (url_error.URLError, TimeoutError, OSError) as net_exc:
            logger.error("Unable to reach RevenueCat API app_user_id=%s: %s", app_user_id, net_exc)
            raise SubscriberFetchError(f"Unable to reach RevenueCat API: {net_exc}") from net_exc

        try:
            parsed = json.loads(body) if body else {}
        except json.JSONDecodeError as exc:
            raise SubscriberFetchError("RevenueCat API returned invalid JSON") from exc
        if not isinstance(parsed, dict):
            raise SubscriberFetchError("RevenueCat API returned a non-object body")
        return parsed

"""Client IP extraction with trusted proxy support.

Only trusts X-Forwarded-For and CF-Connecting-IP headers when TRUST_PROXY is
set to "1" or "true". Cloud Run and most load balancers append the real
client to X-Forwarded-For, so the flag is required in production.
"""

from __future__ import annotations

import logging
import os

from fastapi import Request

logger = logging.getLogger("access_api.client_ip")

TRUST_PROXY = os.environ.get("TRUST_PROXY", "").lower() in ("1", "true")


def get_client_ip(request: Request) -> str:
    """Get client IP address from request.

    If TRUST_PROXY is enabled, checks proxy headers.
    Otherwise, only uses direct connection IP.
    """
    if TRUST_PROXY:
        cf_ip = request.headers.get("CF-Connecting-IP")
        if cf_ip:
            return cf_ip.strip()

        # First IP in chain is original client
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()

    if request.client:
        return request.client.host

    return "unknown"

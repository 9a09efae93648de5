"""Security audit logging for the access service.

Provides structured logging for security-relevant events:
- Authentication failures
- Webhook verification failures
- Permission-denied entitlement recomputes
- Rate limit violations

Logs are structured JSON for easy parsing and alerting.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

# Log directory
LOG_DIR = Path(os.environ.get("SECURITY_LOG_DIR") or Path(__file__).parent.parent.parent / "logs")
SECURITY_LOG_FILE = LOG_DIR / "security.log"

# Log rotation settings
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10MB per file
BACKUP_COUNT = 5  # Keep 5 rotated files (50MB total)


class SecurityLogger:
    """Structured security event logger with rotation."""

    def __init__(self):
        self.logger = logging.getLogger("security")
        self._setup_handler()

    def _setup_handler(self):
        """Set up rotating file handler for security logs."""
        # Avoid duplicate handlers
        if self.logger.handlers:
            return
        try:
            LOG_DIR.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                SECURITY_LOG_FILE,
                maxBytes=MAX_LOG_SIZE,
                backupCount=BACKUP_COUNT,
            )
        except OSError as exc:
            # Read-only filesystems (serverless) still get the events via the root logger.
            logging.getLogger("access_api.security").warning("Security log file unavailable: %s", exc)
            return

        handler.setLevel(logging.WARNING)
        handler.setFormatter(logging.Formatter("%(message)s"))
        self.logger.addHandler(handler)
        self.logger.setLevel(logging.WARNING)

    def log_event(
        self,
        event_type: str,
        severity: str,  # 'low', 'medium', 'high', 'critical'
        details: Dict[str, Any],
        ip: Optional[str] = None,
        uid: Optional[str] = None,
        path: Optional[str] = None,
    ):
        """Log a security event.

        Args:
            event_type: Type of event (auth_failure, webhook_rejected, ...)
            severity: low, medium, high, critical
            details: Event-specific details
            ip: Client IP address
            uid: User ID if known
            path: Request path
        """
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "event": event_type,
            "severity": severity,
            "ip": ip,
            "uid": uid,
            "path": path,
            **details,
        }

        # Remove None values
        event = {k: v for k, v in event.items() if v is not None}

        self.logger.warning(json.dumps(event, default=str))

    # Convenience methods for common events

    def auth_failure(
        self,
        ip: str,
        reason: str,
        path: str,
        user_agent: Optional[str] = None,
        uid: Optional[str] = None,
        **extra: Any,
    ):
        """Log authentication failure."""
        self.log_event(
            event_type="auth_failure",
            severity="medium",
            details={"reason": reason, "user_agent": user_agent, **extra},
            ip=ip,
            uid=uid,
            path=path,
        )

    def webhook_rejected(
        self,
        ip: str,
        provider: str,
        reason: str,
        path: str,
    ):
        """Log a webhook that failed signature/secret verification."""
        self.log_event(
            event_type="webhook_rejected",
            severity="high",
            details={"provider": provider, "reason": reason},
            ip=ip,
            path=path,
        )

    def permission_denied(
        self,
        ip: str,
        uid: str,
        target_uid: str,
        path: str,
    ):
        """Log a caller acting on another user's entitlements without admin."""
        self.log_event(
            event_type="permission_denied",
            severity="high",
            details={"target_uid": target_uid},
            ip=ip,
            uid=uid,
            path=path,
        )

    def rate_limit_exceeded(
        self,
        ip: str,
        path: str,
        limit: str,
    ):
        """Log rate limit violation."""
        self.log_event(
            event_type="rate_limit_exceeded",
            severity="medium",
            details={"limit": limit},
            ip=ip,
            path=path,
        )


# Singleton instance
security_logger = SecurityLogger()

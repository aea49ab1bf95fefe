"""Audit logging for money-moving and security-relevant operations."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import Request


logger = logging.getLogger("giftpool.audit")

_REDACTED_KEYS = ("password", "token", "secret", "key", "authorization")


class AuditAction(str, Enum):
    """Audit action types."""
    # Contributions
    CONTRIBUTION_RECORD = "contribution_record"
    CONTRIBUTION_RESOLVE = "contribution_resolve"

    # Settlement
    SETTLEMENT_CREATE = "settlement_create"
    SETTLEMENT_REJECTED = "settlement_rejected"

    # Float monitoring
    BALANCE_ALERT = "balance_alert"
    CRON_UNAUTHORIZED = "cron_unauthorized"


def _client_info(request: Request) -> dict[str, Any]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return {
        "ip": ip,
        "user_agent": request.headers.get("User-Agent", "")[:200],
        "request_id": request.headers.get("X-Request-Id", ""),
    }


def _redact(details: dict[str, Any]) -> dict[str, Any]:
    return {k: "***REDACTED***" if k.lower() in _REDACTED_KEYS else v for k, v in details.items()}


def audit_log(
    action: AuditAction,
    request: Request | None = None,
    user_id: int | str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """
    Log an audit event.

    Failed actions are logged at WARNING so they stand out from routine
    contribution and settlement traffic. Detail keys that look like
    credentials are redacted.
    """
    event: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action.value,
        "success": success,
    }
    if user_id is not None:
        event["user_id"] = str(user_id)
    if request is not None:
        event.update(_client_info(request))
    if details:
        event["details"] = _redact(details)

    logger.log(logging.INFO if success else logging.WARNING, "AUDIT: %s", event)

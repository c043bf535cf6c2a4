from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from taskdesk.logging import get_logger
from taskdesk.storage.models import ActivityLog

logger = get_logger(__name__)


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    OTP_REQUEST = "OTP_REQUEST"
    TOKEN_REFRESH = "TOKEN_REFRESH"


# every auth entry is keyed to the acting user
AUTH_ENTITY = "AUTH"


@dataclass(frozen=True)
class RequestMeta:
    """Client details captured alongside each audit entry."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class ActivityStore(Protocol):
    def record_activity(
        self,
        action: str,
        entity_type: str,
        *,
        user_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ActivityLog: ...


class ActivityLogger:
    """Best-effort writer for the activity log.

    A failed write is logged and dropped; it never propagates into the auth
    flow that produced it.
    """

    def __init__(self, store: ActivityStore) -> None:
        self.store = store

    def record(
        self,
        user_id: Optional[str],
        action: AuditAction,
        meta: Optional[RequestMeta] = None,
        *,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> Optional[ActivityLog]:
        meta = meta or RequestMeta()
        try:
            return self.store.record_activity(
                action.value,
                AUTH_ENTITY,
                user_id=user_id,
                entity_id=user_id,
                new_values=new_values,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
            )
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                action=action.value,
                user_id=user_id,
                error=str(exc),
            )
            return None

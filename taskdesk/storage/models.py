from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    is_verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, email: str) -> "User":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            created_at=now,
            updated_at=now,
        )

    def to_public(self) -> Dict[str, Any]:
        """Fields safe to return to the account owner."""
        return {
            "id": self.id,
            "email": self.email,
            "is_verified": self.is_verified,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class OtpRecord:
    """A hashed one-time code.

    ``seq`` is assigned by the store and strictly increases across inserts, so
    two records created within the same clock tick still have a total order.
    """

    id: str
    user_id: str
    otp_hash: str
    expires_at: datetime
    is_used: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    seq: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    is_revoked: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class ActivityLog:
    id: str
    action: str
    entity_type: str
    user_id: Optional[str] = None
    entity_id: Optional[str] = None
    old_values: Dict[str, Any] | None = None
    new_values: Dict[str, Any] | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from taskdesk.logging import get_logger
from taskdesk.storage.errors import ConstraintViolation
from taskdesk.storage.models import ActivityLog, OtpRecord, RefreshTokenRecord, User


class MemoryStore:
    """In-process credential store with a JSON snapshot under ``fs_root``.

    Every public method holds ``_data_lock`` for its whole read-modify-write,
    which gives the same conditional-write guarantees the Postgres store gets
    from row locks: ``mark_otp_used`` and ``touch_refresh_token`` are
    compare-and-set operations.
    """

    def __init__(self, fs_root: str = "/tmp/taskdesk", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.otps: Dict[str, OtpRecord] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.activity: List[ActivityLog] = []
        self._otp_seq: int = 1
        # RLock so helpers can re-enter from within a locked operation
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime | None) -> str | None:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: str | None) -> datetime | None:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        """Memory store is always reachable."""
        return None

    # -- users ---------------------------------------------------------

    def create_user(self, email: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email)
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def mark_user_verified(self, user_id: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if not user.is_verified:
                user.is_verified = True
                user.updated_at = now
                self._persist_state()
            return user

    # -- one-time codes -------------------------------------------------

    def supersede_and_create_otp(
        self, user_id: str, otp_hash: str, expires_at: datetime, now: datetime
    ) -> Tuple[OtpRecord, int]:
        """Mark every unused code for ``user_id`` used and add a new one.

        Both steps run under one lock hold, so at most one unused code per
        user exists at any time. Returns the new record and how many codes it
        superseded.
        """
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("otp user missing", {"user_id": user_id})
            superseded = 0
            for existing in self.otps.values():
                if existing.user_id == user_id and not existing.is_used:
                    existing.is_used = True
                    superseded += 1
            record = OtpRecord(
                id=str(uuid.uuid4()),
                user_id=user_id,
                otp_hash=otp_hash,
                expires_at=expires_at,
                created_at=now,
                seq=self._otp_seq,
            )
            self._otp_seq += 1
            self.otps[record.id] = record
            self._persist_state()
            return record, superseded

    def find_latest_unused_otp(self, user_id: str) -> Optional[OtpRecord]:
        with self._data_lock:
            candidates = [
                r for r in self.otps.values() if r.user_id == user_id and not r.is_used
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda r: (r.created_at, r.seq))

    def mark_otp_used(self, otp_id: str) -> bool:
        with self._data_lock:
            record = self.otps.get(otp_id)
            if record is None or record.is_used:
                return False
            record.is_used = True
            self._persist_state()
            return True

    def list_otps(self, user_id: str) -> List[OtpRecord]:
        with self._data_lock:
            return sorted(
                (r for r in self.otps.values() if r.user_id == user_id),
                key=lambda r: r.seq,
            )

    def delete_expired_otps(self, now: datetime) -> int:
        with self._data_lock:
            expired = [oid for oid, r in self.otps.items() if r.expires_at < now]
            for oid in expired:
                del self.otps[oid]
            if expired:
                self._persist_state()
            return len(expired)

    # -- refresh tokens -------------------------------------------------

    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime, now: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token hash already exists", {"field": "token_hash"}
                )
            record = RefreshTokenRecord(
                id=str(uuid.uuid4()),
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
                created_at=now,
            )
            self.refresh_tokens[token_hash] = record
            self._persist_state()
            return record

    def find_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(token_hash)

    def touch_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]:
        """Stamp ``last_used_at`` only if the token is still valid at ``now``."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if record is None or not record.is_valid(now):
                return None
            record.last_used_at = now
            self._persist_state()
            return record

    def revoke_refresh_token(self, token_hash: str, user_id: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if record is None or record.user_id != user_id or record.is_revoked:
                return False
            record.is_revoked = True
            self._persist_state()
            return True

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [h for h, r in self.refresh_tokens.items() if r.expires_at < before]
            for token_hash in stale:
                del self.refresh_tokens[token_hash]
            if stale:
                self._persist_state()
            return len(stale)

    # -- activity log ---------------------------------------------------

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
    ) -> ActivityLog:
        with self._data_lock:
            entry = ActivityLog(
                id=str(uuid.uuid4()),
                action=action,
                entity_type=entity_type,
                user_id=user_id,
                entity_id=entity_id,
                old_values=old_values,
                new_values=new_values,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.activity.append(entry)
            self._persist_state()
            return entry

    def list_activity(self, user_id: str, limit: int = 100) -> List[ActivityLog]:
        with self._data_lock:
            entries = [e for e in self.activity if e.user_id == user_id]
            return sorted(entries, key=lambda e: e.created_at, reverse=True)[:limit]

    # -- persistence ----------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "otps": [self._serialize_otp(r) for r in self.otps.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "activity": [self._serialize_activity(e) for e in self.activity],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        if not self.persist:
            return False
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.otps = {r["id"]: self._deserialize_otp(r) for r in data.get("otps", [])}
        self._otp_seq = max((r.seq for r in self.otps.values()), default=0) + 1
        self.refresh_tokens = {
            r["token_hash"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.activity = [self._deserialize_activity(e) for e in data.get("activity", [])]
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "is_verified": user.is_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            is_verified=bool(data.get("is_verified", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_otp(self, record: OtpRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "otp_hash": record.otp_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "is_used": record.is_used,
            "created_at": self._serialize_datetime(record.created_at),
            "seq": record.seq,
        }

    def _deserialize_otp(self, data: dict) -> OtpRecord:
        return OtpRecord(
            id=data["id"],
            user_id=data["user_id"],
            otp_hash=data["otp_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_used=bool(data.get("is_used", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            seq=int(data.get("seq", 0)),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token_hash": record.token_hash,
            "expires_at": self._serialize_datetime(record.expires_at),
            "is_revoked": record.is_revoked,
            "created_at": self._serialize_datetime(record.created_at),
            "last_used_at": self._serialize_datetime(record.last_used_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_revoked=bool(data.get("is_revoked", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
        )

    def _serialize_activity(self, entry: ActivityLog) -> dict:
        return {
            "id": entry.id,
            "action": entry.action,
            "entity_type": entry.entity_type,
            "user_id": entry.user_id,
            "entity_id": entry.entity_id,
            "old_values": entry.old_values,
            "new_values": entry.new_values,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_activity(self, data: dict) -> ActivityLog:
        return ActivityLog(
            id=data["id"],
            action=data["action"],
            entity_type=data["entity_type"],
            user_id=data.get("user_id"),
            entity_id=data.get("entity_id"),
            old_values=data.get("old_values"),
            new_values=data.get("new_values"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

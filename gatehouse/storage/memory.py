from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, UnknownFieldError
from gatehouse.storage.models import (
    ROLE_ADMIN,
    ROLE_USER,
    USER_MUTABLE_FIELDS,
    ActivityLog,
    SecondFactorCode,
    TrustedDevice,
    User,
    utcnow,
)


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - USER_MUTABLE_FIELDS
    if unknown:
        raise UnknownFieldError(f"unknown user fields: {sorted(unknown)}")


class MemoryStore:
    """In-memory credential store.

    Every read returns a copy so callers cannot mutate stored state behind
    the lock; all writes go through the methods below.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.second_factor_codes: Dict[str, SecondFactorCode] = {}
        self.trusted_devices: Dict[str, List[TrustedDevice]] = {}
        self.activity: List[ActivityLog] = []
        # RLock for all data operations; nested acquisition is allowed
        self._data_lock = threading.RLock()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        bootstrap_admin: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            first = bootstrap_admin and not self.users
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=ROLE_ADMIN if first else ROLE_USER,
                verified=first,
            )
            self.users[user.id] = user
            if first:
                self.logger.info("bootstrap_admin_created", user_id=user.id)
            return replace(user)

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        _check_fields(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            return replace(user)

    def update_user_if(
        self, user_id: str, expected: Dict[str, Any], **fields: Any
    ) -> Optional[User]:
        """Apply ``fields`` only while every ``expected`` column still holds its value.

        Returns the updated user, or ``None`` when the user is gone or any
        expected value has changed.
        """
        _check_fields(expected)
        _check_fields(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in expected.items():
                if getattr(user, key) != value:
                    return None
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            return replace(user)

    # -- second factor codes -----------------------------------------------

    def upsert_second_factor_code(
        self, user_id: str, code_hash: str, expires_at: datetime
    ) -> SecondFactorCode:
        with self._data_lock:
            record = SecondFactorCode(
                user_id=user_id, code_hash=code_hash, expires_at=expires_at, attempts=0
            )
            self.second_factor_codes[user_id] = record
            return replace(record)

    def get_second_factor_code(self, user_id: str) -> Optional[SecondFactorCode]:
        with self._data_lock:
            record = self.second_factor_codes.get(user_id)
            return replace(record) if record else None

    def delete_second_factor_code(
        self, user_id: str, *, code_hash: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            record = self.second_factor_codes.get(user_id)
            if not record:
                return False
            if code_hash is not None and record.code_hash != code_hash:
                return False
            del self.second_factor_codes[user_id]
            return True

    def update_second_factor_attempts(
        self, user_id: str, *, code_hash: str
    ) -> Optional[int]:
        """Count one failed attempt against the code with ``code_hash``.

        Returns the new count, or ``None`` once that code is gone or replaced.
        """
        with self._data_lock:
            record = self.second_factor_codes.get(user_id)
            if not record or record.code_hash != code_hash:
                return None
            record.attempts += 1
            return record.attempts

    # -- trusted devices ---------------------------------------------------

    def create_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._data_lock:
            self.trusted_devices.setdefault(device.user_id, []).append(replace(device))
            return device

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            return [replace(d) for d in self.trusted_devices.get(user_id, [])]

    # -- activity ----------------------------------------------------------

    def record_activity(
        self,
        user_id: str,
        action: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ActivityLog:
        entry = ActivityLog(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action=action,
            ip=ip,
            user_agent=user_agent,
        )
        with self._data_lock:
            self.activity.append(entry)
        return replace(entry)

    def list_activity(self, user_id: str) -> List[ActivityLog]:
        with self._data_lock:
            return [replace(e) for e in self.activity if e.user_id == user_id]

    def purge_activity_before(self, threshold: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.activity if e.created_at >= threshold]
            removed = len(self.activity) - len(kept)
            self.activity = kept
            return removed

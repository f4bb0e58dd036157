from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


ROLE_ADMIN = "admin"
ROLE_USER = "user"

ACTIVITY_LOGIN = "login"
ACTIVITY_LOGOUT = "logout"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = ROLE_USER
    is_active: bool = True
    verified: bool = False
    hashed_refresh_token: Optional[str] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expiry: Optional[datetime] = None
    two_factor_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


# Columns callers may change through update_user / update_user_if
USER_MUTABLE_FIELDS = frozenset(
    {
        "password_hash",
        "first_name",
        "last_name",
        "role",
        "is_active",
        "verified",
        "hashed_refresh_token",
        "password_reset_token_hash",
        "password_reset_expiry",
        "two_factor_enabled",
        "last_login_at",
    }
)


@dataclass
class SecondFactorCode:
    """The single outstanding one-time code for a user."""

    user_id: str
    code_hash: str
    expires_at: datetime
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class TrustedDevice:
    id: str
    user_id: str
    user_agent: str
    device_token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        user_agent: str,
        device_token_hash: str,
        *,
        ttl_days: int = 30,
        now: Optional[datetime] = None,
    ) -> "TrustedDevice":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            user_agent=user_agent,
            device_token_hash=device_token_hash,
            expires_at=now + timedelta(days=ttl_days),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class ActivityLog:
    id: str
    user_id: str
    action: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

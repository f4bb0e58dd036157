from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional
from urllib.parse import urlencode

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.activity import ActivityLogService
from gatehouse.service.email import Notifier
from gatehouse.service.errors import (
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from gatehouse.service.hashing import SecretHasher
from gatehouse.service.locks import UserLocks
from gatehouse.service.store import CredentialStore, run_store
from gatehouse.service.tokens import TokenPurpose, TokenSigner
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    ACTIVITY_LOGIN,
    ACTIVITY_LOGOUT,
    ROLE_ADMIN,
    User,
    utcnow,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid email or password"
INVALID_TOKEN = "invalid or expired token"
INVALID_REFRESH = "invalid refresh token"
INVALID_RESET = "invalid or expired reset token"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


@dataclass
class Identity:
    """Who the bearer of a valid access token is, as of this request."""

    user_id: str
    email: str
    role: str
    second_factor_verified: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class VerificationResult:
    email: str
    already_verified: bool


class SessionEngine:
    """Registration, login and the refresh-token rotation state machine.

    Exactly one refresh token per user is live at a time; only its hash is
    stored. Presenting anything else for a user who has a live token clears
    it, which forces every holder back to a full login.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        signer: TokenSigner,
        notifier: Notifier,
        locks: UserLocks,
        activity: ActivityLogService,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.signer = signer
        self.notifier = notifier
        self.locks = locks
        self.activity = activity
        self.settings = settings
        self.logger = logger
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def _db(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await run_store(
            fn, *args, timeout=self.settings.store_timeout_seconds, **kwargs
        )

    def _link(self, path: str, token: str) -> str:
        base = self.settings.frontend_url.rstrip("/")
        return f"{base}/{path}?{urlencode({'token': token})}"

    def _mint_pair(self, user: User, *, second_factor_verified: bool = False) -> TokenPair:
        access = self.issue_access_token(user, second_factor_verified=second_factor_verified)
        refresh = self.signer.sign(
            TokenPurpose.REFRESH,
            user.id,
            {"role": user.role, "tfa": second_factor_verified},
        )
        return TokenPair(access_token=access, refresh_token=refresh)

    def issue_access_token(self, user: User, *, second_factor_verified: bool = False) -> str:
        return self.signer.sign(
            TokenPurpose.ACCESS,
            user.id,
            {
                "email": user.email,
                "role": user.role,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "tfa": second_factor_verified,
            },
        )

    async def _store_new_pair(
        self, user: User, *, second_factor_verified: bool = False, **fields: Any
    ) -> tuple[User, TokenPair]:
        tokens = self._mint_pair(user, second_factor_verified=second_factor_verified)
        refresh_hash = await self.hasher.ahash_secret(tokens.refresh_token)
        updated = await self._db(
            self.store.update_user, user.id, hashed_refresh_token=refresh_hash, **fields
        )
        if not updated:
            raise UnauthorizedError(INVALID_CREDENTIALS)
        return updated, tokens

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AuthResult:
        email = normalize_email(email)
        if "@" not in email:
            raise ValidationError("invalid email", detail={"field": "email"})
        if not password:
            raise ValidationError("password required", detail={"field": "password"})
        password_hash = await self.hasher.ahash_password(password)
        try:
            user = await self._db(
                self.store.create_user,
                email,
                password_hash,
                first_name=first_name.strip() if first_name else None,
                last_name=last_name.strip() if last_name else None,
                bootstrap_admin=self.settings.bootstrap_first_admin,
            )
        except ConstraintViolation:
            self.logger.info("register_duplicate_email")
            raise ConflictError("email already registered", detail={"field": "email"})
        user, tokens = await self._store_new_pair(user)
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        return AuthResult(user=user, tokens=tokens)

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = await self._db(self.store.get_user_by_email, normalize_email(email))
        if not user:
            await self.hasher.aburn_password_check(password or "")
            self.logger.warning("login_failed", reason="unknown_email")
            raise UnauthorizedError(INVALID_CREDENTIALS)
        if not await self.hasher.averify_password(user.password_hash, password or ""):
            self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise UnauthorizedError(INVALID_CREDENTIALS)
        if not user.is_active:
            self.logger.warning("login_failed", reason="inactive", user_id=user.id)
            raise UnauthorizedError(INVALID_CREDENTIALS)
        user, tokens = await self._store_new_pair(user, last_login_at=self._now())
        await self.activity.record(user.id, ACTIVITY_LOGIN, ip=ip, user_agent=user_agent)
        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def refresh(self, user_id: str, presented_refresh_token: str) -> TokenPair:
        """Rotate the user's refresh token.

        The presented token must be a well-formed refresh token for
        ``user_id``. A token that is validly signed but does not match the
        stored hash is treated as reuse of a rotated token and revokes the
        stored one.
        """
        claims = self.signer.verify(TokenPurpose.REFRESH, presented_refresh_token)
        if not claims or claims.get("sub") != user_id:
            self.logger.warning("refresh_rejected", reason="bad_token", user_id=user_id)
            raise UnauthorizedError(INVALID_REFRESH)

        async with self.locks.hold(user_id):
            user = await self._db(self.store.get_user, user_id)
            if not user or not user.is_active or not user.hashed_refresh_token:
                self.logger.warning("refresh_rejected", reason="no_live_token", user_id=user_id)
                raise UnauthorizedError(INVALID_REFRESH)
            stored_hash = user.hashed_refresh_token
            if not await self.hasher.averify_secret(stored_hash, presented_refresh_token):
                await self._db(
                    self.store.update_user_if,
                    user_id,
                    {"hashed_refresh_token": stored_hash},
                    hashed_refresh_token=None,
                )
                self.logger.warning("refresh_token_reuse_detected", user_id=user_id)
                raise UnauthorizedError(INVALID_REFRESH)

            tokens = self._mint_pair(user, second_factor_verified=bool(claims.get("tfa")))
            new_hash = await self.hasher.ahash_secret(tokens.refresh_token)
            swapped = await self._db(
                self.store.update_user_if,
                user_id,
                {"hashed_refresh_token": stored_hash},
                hashed_refresh_token=new_hash,
            )
            if not swapped:
                self.logger.warning("refresh_rejected", reason="lost_race", user_id=user_id)
                raise UnauthorizedError(INVALID_REFRESH)
        self.logger.info("refresh_rotated", user_id=user_id)
        return tokens

    async def issue_verified_tokens(self, user_id: str) -> TokenPair:
        """Fresh pair for a session that just completed the second factor."""
        async with self.locks.hold(user_id):
            user = await self._db(self.store.get_user, user_id)
            if not user or not user.is_active:
                raise UnauthorizedError(INVALID_TOKEN)
            _, tokens = await self._store_new_pair(user, second_factor_verified=True)
        return tokens

    async def logout(
        self,
        user_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        user = await self._db(self.store.update_user, user_id, hashed_refresh_token=None)
        if user:
            await self.activity.record(user_id, ACTIVITY_LOGOUT, ip=ip, user_agent=user_agent)
        self.logger.info("logout", user_id=user_id)

    async def authenticate(self, access_token: str) -> Identity:
        claims = self.signer.verify(TokenPurpose.ACCESS, access_token)
        if not claims:
            raise UnauthorizedError(INVALID_TOKEN)
        user = await self._db(self.store.get_user, claims["sub"])
        if not user or not user.is_active:
            raise UnauthorizedError(INVALID_TOKEN)
        if claims.get("role") != user.role:
            # Role changed since issue; force a refresh
            self.logger.info("access_token_role_stale", user_id=user.id)
            raise UnauthorizedError(INVALID_TOKEN)
        return Identity(
            user_id=user.id,
            email=user.email,
            role=user.role,
            second_factor_verified=bool(claims.get("tfa")),
        )

    async def get_user(self, user_id: str) -> User:
        user = await self._db(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def send_verification_email(self, user_id: str) -> None:
        user = await self._db(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("user not found")
        token = self.signer.sign(
            TokenPurpose.VERIFY_EMAIL,
            user.id,
            {"email": user.email, "first_name": user.first_name},
        )
        await self.notifier.send_verification_email(
            user.email, self._link("verify-email", token), user.first_name or "there"
        )
        self.logger.info("verification_email_sent", user_id=user.id)

    async def verify_email(self, token: str) -> VerificationResult:
        claims = self.signer.verify(TokenPurpose.VERIFY_EMAIL, token)
        if not claims:
            self.logger.warning("email_verification_invalid_token")
            raise UnauthorizedError(INVALID_TOKEN)
        user = await self._db(self.store.get_user, claims["sub"])
        if not user or claims.get("email") != user.email:
            self.logger.warning("email_verification_user_mismatch", user_id=claims["sub"])
            raise UnauthorizedError(INVALID_TOKEN)
        if user.verified:
            return VerificationResult(email=user.email, already_verified=True)
        await self._db(self.store.update_user, user.id, verified=True)
        self.logger.info("email_verified", user_id=user.id)
        return VerificationResult(email=user.email, already_verified=False)

    async def send_reset_password_email(self, email: str) -> None:
        """Start a password reset. Unknown addresses are a silent no-op.

        The token hash and expiry are stored before delivery is attempted, so
        a ``DeliveryError`` leaves a usable (if undelivered) reset pending.
        """
        user = await self._db(self.store.get_user_by_email, normalize_email(email))
        if not user:
            self.logger.info("password_reset_unknown_email")
            return
        token = self.signer.sign(TokenPurpose.RESET_PASSWORD, user.id)
        token_hash = await self.hasher.ahash_secret(token)
        expires_at = self._now() + self.signer.lifetime(TokenPurpose.RESET_PASSWORD)
        await self._db(
            self.store.update_user,
            user.id,
            password_reset_token_hash=token_hash,
            password_reset_expiry=expires_at,
        )
        await self.notifier.send_reset_password_email(
            user.email, self._link("reset-password", token)
        )
        self.logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(self, token: str, new_password: str) -> None:
        if not new_password:
            raise ValidationError("password required", detail={"field": "password"})
        claims = self.signer.verify(TokenPurpose.RESET_PASSWORD, token)
        if not claims:
            self.logger.warning("password_reset_invalid_token")
            raise UnauthorizedError(INVALID_RESET)
        user_id = claims["sub"]
        async with self.locks.hold(user_id):
            user = await self._db(self.store.get_user, user_id)
            if not user or not user.password_reset_token_hash or not user.password_reset_expiry:
                self.logger.warning("password_reset_not_pending", user_id=user_id)
                raise UnauthorizedError(INVALID_RESET)
            stored_hash = user.password_reset_token_hash
            if user.password_reset_expiry <= self._now():
                await self._db(
                    self.store.update_user_if,
                    user_id,
                    {"password_reset_token_hash": stored_hash},
                    password_reset_token_hash=None,
                    password_reset_expiry=None,
                )
                self.logger.warning("password_reset_expired", user_id=user_id)
                raise UnauthorizedError(INVALID_RESET)
            if not await self.hasher.averify_secret(stored_hash, token):
                self.logger.warning("password_reset_token_mismatch", user_id=user_id)
                raise UnauthorizedError(INVALID_RESET)
            password_hash = await self.hasher.ahash_password(new_password)
            updated = await self._db(
                self.store.update_user_if,
                user_id,
                {"password_reset_token_hash": stored_hash},
                password_hash=password_hash,
                password_reset_token_hash=None,
                password_reset_expiry=None,
                hashed_refresh_token=None,
            )
            if not updated:
                raise UnauthorizedError(INVALID_RESET)
        self.logger.info("password_reset_completed", user_id=user_id)

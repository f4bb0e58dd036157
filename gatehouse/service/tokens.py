from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.storage.models import utcnow

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    VERIFY_EMAIL = "verify_email"
    RESET_PASSWORD = "reset_password"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """HS256 tokens with one secret and one lifetime per purpose.

    A token carries its purpose both implicitly (the secret it was signed
    with) and explicitly (the ``purpose`` claim); ``verify`` checks both, so
    a refresh token can never be replayed as an access token or a reset
    token. Each token gets a fresh ``jti`` so two tokens minted for the same
    subject in the same second still differ.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self._secrets = {
            TokenPurpose.ACCESS: settings.jwt_access_secret.encode(),
            TokenPurpose.REFRESH: settings.jwt_refresh_secret.encode(),
            TokenPurpose.VERIFY_EMAIL: settings.jwt_verify_email_secret.encode(),
            TokenPurpose.RESET_PASSWORD: settings.jwt_reset_password_secret.encode(),
        }
        self._lifetimes = {
            TokenPurpose.ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            TokenPurpose.REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
            TokenPurpose.VERIFY_EMAIL: timedelta(
                minutes=settings.verify_email_token_ttl_minutes
            ),
            TokenPurpose.RESET_PASSWORD: timedelta(
                minutes=settings.reset_password_token_ttl_minutes
            ),
        }
        self._clock = clock or utcnow

    def lifetime(self, purpose: TokenPurpose) -> timedelta:
        return self._lifetimes[purpose]

    def sign(
        self,
        purpose: TokenPurpose,
        subject: str,
        claims: Optional[dict[str, Any]] = None,
    ) -> str:
        now = self._clock()
        payload = {
            **(claims or {}),
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "purpose": purpose.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._lifetimes[purpose]).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(purpose, signing_input)}"

    def verify(self, purpose: TokenPurpose, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a valid, unexpired ``purpose`` token, else ``None``."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed", purpose=purpose.value)
            return None
        # Reject anything but HS256 to rule out algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", purpose=purpose.value)
            return None

        expected_sig = self._signature(purpose, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("purpose") != purpose.value:
            logger.warning(
                "jwt_purpose_mismatch", expected=purpose.value, got=payload.get("purpose")
            )
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        if not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp():
            return None
        return payload

    def _signature(self, purpose: TokenPurpose, signing_input: str) -> str:
        digest = hmac.new(
            self._secrets[purpose], signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

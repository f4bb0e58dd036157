from __future__ import annotations

import asyncio
import html
import re
import smtplib
import ssl
import threading
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol

from gatehouse.logging import get_logger
from gatehouse.service.errors import DeliveryError

logger = get_logger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"
_ALLOWED_SUFFIXES = {".html", ".txt", ".template"}
_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class TemplateError(Exception):
    """Raised when a template name is rejected or the file is missing."""


class TemplateCache:
    """Read-through cache of template files under a single root directory.

    Names must be bare file names with an allowed extension; anything that
    would resolve outside the root is rejected. Files are read once and kept
    for the life of the cache.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root or DEFAULT_TEMPLATE_DIR).resolve()
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _resolve(self, name: str) -> Path:
        if not name or ".." in name or Path(name).is_absolute() or "/" in name or "\\" in name:
            raise TemplateError(f"invalid template name: {name!r}")
        if Path(name).suffix not in _ALLOWED_SUFFIXES:
            raise TemplateError(f"invalid template type: {name!r}")
        path = (self.root / name).resolve()
        if path.parent != self.root or not path.is_file():
            raise TemplateError(f"template not found: {name!r}")
        return path

    def load(self, name: str) -> str:
        with self._lock:
            cached = self._cache.get(name)
            if cached is not None:
                return cached
            content = self._resolve(name).read_text(encoding="utf-8")
            self._cache[name] = content
            return content

    def render(self, name: str, variables: Mapping[str, object]) -> str:
        content = self.load(name)
        escape = Path(name).suffix == ".html"

        def _sub(match: re.Match) -> str:
            key = match.group(1)
            if key not in variables:
                return match.group(0)
            value = str(variables[key])
            return html.escape(value) if escape else value

        return _PLACEHOLDER.sub(_sub, content)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


class Notifier(Protocol):
    """Outbound delivery the engines depend on. Failures raise ``DeliveryError``."""

    async def send_verification_email(self, to: str, link: str, name: str) -> None:
        ...

    async def send_reset_password_email(self, to: str, link: str) -> None:
        ...

    async def send_second_factor_code(self, to: str, code: str) -> None:
        ...


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Verification, password reset and one-time code messages
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        *,
        templates: TemplateCache,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Gatehouse",
        company_name: str = "Gatehouse",
        support_email: Optional[str] = None,
        verify_email_ttl_minutes: int = 60,
        reset_password_ttl_minutes: int = 60,
        otp_ttl_minutes: int = 5,
    ) -> None:
        self.templates = templates
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.company_name = company_name
        self.support_email = support_email or self.from_email or ""
        self.verify_email_ttl_minutes = verify_email_ttl_minutes
        self.reset_password_ttl_minutes = reset_password_ttl_minutes
        self.otp_ttl_minutes = otp_ttl_minutes

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _common_vars(self, to_email: str) -> dict:
        return {
            "companyName": self.company_name,
            "supportEmail": self.support_email,
            "currentYear": datetime.now(timezone.utc).year,
            "email": to_email,
        }

    def _render(self, name: str, variables: Mapping[str, object]) -> str:
        try:
            return self.templates.render(name, variables)
        except (TemplateError, OSError) as exc:
            logger.error("email_template_failed", template=name, error=str(exc))
            raise DeliveryError("could not render message") from exc

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> None:
        """Send an email via SMTP; raises ``DeliveryError`` on any failure."""
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            raise DeliveryError("email delivery failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=self._redact_email(to_email), error=str(e)
            )
            raise DeliveryError("email delivery failed") from e
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            # OSError covers connection refusal and socket timeouts
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise DeliveryError("email delivery failed") from e

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)

    async def send_verification_email(self, to: str, link: str, name: str) -> None:
        html_body = self._render(
            "confirm-email.html",
            {
                **self._common_vars(to),
                "firstName": name or "there",
                "verificationLink": link,
                "expiryTime": self.verify_email_ttl_minutes,
            },
        )
        text_body = (
            f"Hi {name or 'there'},\n\n"
            f"Please verify your email address by visiting the link below:\n\n{link}\n\n"
            f"This link will expire in {self.verify_email_ttl_minutes} minutes.\n\n"
            f"---\n{self.company_name}\n"
        )
        await asyncio.to_thread(
            self._send_email, to, "Verify your email address", html_body, text_body
        )

    async def send_reset_password_email(self, to: str, link: str) -> None:
        html_body = self._render(
            "reset-password.html",
            {
                **self._common_vars(to),
                "resetLink": link,
                "expiryTime": self.reset_password_ttl_minutes,
            },
        )
        text_body = (
            "We received a request to reset your password. "
            f"Visit the link below to choose a new password:\n\n{link}\n\n"
            f"This link will expire in {self.reset_password_ttl_minutes} minutes.\n\n"
            "If you didn't request this, you can safely ignore this email.\n\n"
            f"---\n{self.company_name}\n"
        )
        await asyncio.to_thread(
            self._send_email, to, "Reset your password", html_body, text_body
        )

    async def send_second_factor_code(self, to: str, code: str) -> None:
        html_body = self._render(
            "two-factor-code.html",
            {
                **self._common_vars(to),
                "code": code,
                "expiryTime": self.otp_ttl_minutes,
            },
        )
        text_body = (
            f"Your verification code is {code}\n\n"
            f"It expires in {self.otp_ttl_minutes} minutes. "
            "If you didn't try to sign in, change your password.\n\n"
            f"---\n{self.company_name}\n"
        )
        await asyncio.to_thread(
            self._send_email, to, "Your verification code", html_body, text_body
        )

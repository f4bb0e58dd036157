"""Unit tests for the session engine.

Tests for:
- Registration and first-admin bootstrap
- Login and uniform credential failures
- Refresh-token rotation and reuse detection
- Access-token authentication
- Email verification flow
- Password reset flow
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from gatehouse.service.errors import (
    ConflictError,
    DeliveryError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from gatehouse.service.sessions import INVALID_CREDENTIALS, normalize_email
from gatehouse.storage.models import ACTIVITY_LOGIN, ACTIVITY_LOGOUT, ROLE_ADMIN, ROLE_USER

PASSWORD = "TestPassword123!"


def token_from_link(link):
    return parse_qs(urlparse(link).query)["token"][0]


async def _admin_and_user(sessions):
    """Register the bootstrap admin, then an ordinary user."""
    admin = await sessions.register("admin@example.com", PASSWORD)
    user = await sessions.register("user@example.com", PASSWORD, first_name="Ada")
    return admin, user


class TestRegister:
    async def test_first_account_is_verified_admin(self, sessions):
        result = await sessions.register("admin@example.com", PASSWORD)

        assert result.user.role == ROLE_ADMIN
        assert result.user.verified is True
        assert result.tokens.access_token
        assert result.tokens.refresh_token

    async def test_later_accounts_are_plain_users(self, sessions):
        _, user = await _admin_and_user(sessions)

        assert user.user.role == ROLE_USER
        assert user.user.verified is False
        assert user.user.first_name == "Ada"

    async def test_bootstrap_can_be_disabled(self, sessions, settings):
        sessions.settings = settings.model_copy(update={"bootstrap_first_admin": False})
        result = await sessions.register("first@example.com", PASSWORD)

        assert result.user.role == ROLE_USER
        assert result.user.verified is False

    async def test_only_refresh_hash_is_stored(self, sessions, store):
        result = await sessions.register("admin@example.com", PASSWORD)
        stored = store.get_user(result.user.id)

        assert stored.hashed_refresh_token
        assert stored.hashed_refresh_token != result.tokens.refresh_token
        assert stored.password_hash != PASSWORD

    async def test_duplicate_email_conflicts_case_insensitively(self, sessions):
        await sessions.register("admin@example.com", PASSWORD)

        with pytest.raises(ConflictError):
            await sessions.register("  Admin@Example.COM ", PASSWORD)

    @pytest.mark.parametrize("email,password", [("no-at-sign", PASSWORD), ("a@b.io", "")])
    async def test_invalid_input(self, sessions, email, password):
        with pytest.raises(ValidationError):
            await sessions.register(email, password)

    def test_normalize_email(self):
        assert normalize_email("  Mixed@Case.Org ") == "mixed@case.org"
        assert normalize_email(None) == ""


class TestLogin:
    async def test_login_succeeds_and_records_activity(self, sessions, store):
        registered = await sessions.register("admin@example.com", PASSWORD)
        result = await sessions.login("ADMIN@example.com", PASSWORD, ip="10.0.0.1", user_agent="ua")

        assert result.user.id == registered.user.id
        assert result.user.last_login_at is not None
        entries = store.list_activity(registered.user.id)
        assert [entry.action for entry in entries] == [ACTIVITY_LOGIN]
        assert entries[0].ip == "10.0.0.1"

    async def test_login_replaces_live_refresh_token(self, sessions):
        registered = await sessions.register("admin@example.com", PASSWORD)
        await sessions.login("admin@example.com", PASSWORD)

        with pytest.raises(UnauthorizedError):
            await sessions.refresh(registered.user.id, registered.tokens.refresh_token)

    async def test_failures_are_indistinguishable(self, sessions, store):
        registered = await sessions.register("admin@example.com", PASSWORD)
        store.update_user(registered.user.id, is_active=False)
        messages = []
        for email, password in [
            ("nobody@example.com", PASSWORD),
            ("admin@example.com", "WrongPassword1"),
            ("admin@example.com", PASSWORD),
        ]:
            with pytest.raises(UnauthorizedError) as exc_info:
                await sessions.login(email, password)
            messages.append(exc_info.value.message)

        assert messages == [INVALID_CREDENTIALS] * 3


class TestRefresh:
    async def test_rotation_returns_new_pair(self, sessions, store):
        registered = await sessions.register("admin@example.com", PASSWORD)
        before = store.get_user(registered.user.id).hashed_refresh_token

        tokens = await sessions.refresh(registered.user.id, registered.tokens.refresh_token)

        assert tokens.refresh_token != registered.tokens.refresh_token
        assert store.get_user(registered.user.id).hashed_refresh_token != before
        identity = await sessions.authenticate(tokens.access_token)
        assert identity.user_id == registered.user.id

    async def test_reuse_of_rotated_token_revokes_session(self, sessions, store):
        registered = await sessions.register("admin@example.com", PASSWORD)
        user_id = registered.user.id
        rotated = await sessions.refresh(user_id, registered.tokens.refresh_token)

        with pytest.raises(UnauthorizedError):
            await sessions.refresh(user_id, registered.tokens.refresh_token)

        assert store.get_user(user_id).hashed_refresh_token is None
        with pytest.raises(UnauthorizedError):
            await sessions.refresh(user_id, rotated.refresh_token)

    async def test_token_for_other_user_leaves_state_alone(self, sessions, store):
        admin, user = await _admin_and_user(sessions)
        before = store.get_user(admin.user.id).hashed_refresh_token

        with pytest.raises(UnauthorizedError):
            await sessions.refresh(admin.user.id, user.tokens.refresh_token)

        assert store.get_user(admin.user.id).hashed_refresh_token == before

    async def test_access_token_is_not_a_refresh_token(self, sessions):
        registered = await sessions.register("admin@example.com", PASSWORD)

        with pytest.raises(UnauthorizedError):
            await sessions.refresh(registered.user.id, registered.tokens.access_token)

    async def test_expired_refresh_token(self, sessions, clock, settings):
        registered = await sessions.register("admin@example.com", PASSWORD)
        clock.advance(minutes=settings.refresh_token_ttl_minutes + 1)

        with pytest.raises(UnauthorizedError):
            await sessions.refresh(registered.user.id, registered.tokens.refresh_token)

    async def test_refresh_after_logout(self, sessions, store):
        registered = await sessions.register("admin@example.com", PASSWORD)
        await sessions.logout(registered.user.id, ip="10.0.0.1")

        with pytest.raises(UnauthorizedError):
            await sessions.refresh(registered.user.id, registered.tokens.refresh_token)
        assert [e.action for e in store.list_activity(registered.user.id)] == [ACTIVITY_LOGOUT]

    async def test_refresh_keeps_second_factor_flag(self, sessions):
        registered = await sessions.register("admin@example.com", PASSWORD)
        verified = await sessions.issue_verified_tokens(registered.user.id)

        rotated = await sessions.refresh(registered.user.id, verified.refresh_token)
        identity = await sessions.authenticate(rotated.access_token)

        assert identity.second_factor_verified is True


class TestLogoutAndAuthenticate:
    async def test_logout_unknown_user_is_noop(self, sessions, store):
        await sessions.logout("missing-user")

        assert store.activity == []

    async def test_authenticate_returns_identity(self, sessions):
        registered = await sessions.register("admin@example.com", PASSWORD)
        identity = await sessions.authenticate(registered.tokens.access_token)

        assert identity.email == "admin@example.com"
        assert identity.is_admin is True
        assert identity.second_factor_verified is False

    async def test_stale_role_is_rejected(self, sessions, store):
        registered = await sessions.register("admin@example.com", PASSWORD)
        store.update_user(registered.user.id, role=ROLE_USER)

        with pytest.raises(UnauthorizedError):
            await sessions.authenticate(registered.tokens.access_token)

    async def test_inactive_user_is_rejected(self, sessions, store):
        registered = await sessions.register("admin@example.com", PASSWORD)
        store.update_user(registered.user.id, is_active=False)

        with pytest.raises(UnauthorizedError):
            await sessions.authenticate(registered.tokens.access_token)

    async def test_get_user_missing(self, sessions):
        with pytest.raises(NotFoundError):
            await sessions.get_user("missing-user")


class TestEmailVerification:
    async def test_verification_flow(self, sessions, notifier, settings):
        _, user = await _admin_and_user(sessions)
        await sessions.send_verification_email(user.user.id)
        message = notifier.last("verify_email")

        assert message["to"] == "user@example.com"
        assert message["name"] == "Ada"
        assert message["link"].startswith(f"{settings.frontend_url}/verify-email?token=")

        result = await sessions.verify_email(token_from_link(message["link"]))
        assert result.already_verified is False
        again = await sessions.verify_email(token_from_link(message["link"]))
        assert again.already_verified is True

    async def test_unknown_user(self, sessions):
        with pytest.raises(NotFoundError):
            await sessions.send_verification_email("missing-user")

    async def test_wrong_purpose_token(self, sessions):
        registered = await sessions.register("admin@example.com", PASSWORD)

        with pytest.raises(UnauthorizedError):
            await sessions.verify_email(registered.tokens.access_token)


class TestPasswordReset:
    async def test_reset_flow(self, sessions, notifier, store):
        registered = await sessions.register("admin@example.com", PASSWORD)
        await sessions.send_reset_password_email("Admin@Example.com")
        token = token_from_link(notifier.last("reset_password")["link"])

        await sessions.reset_password(token, "BrandNewPass456!")

        stored = store.get_user(registered.user.id)
        assert stored.password_reset_token_hash is None
        assert stored.password_reset_expiry is None
        assert stored.hashed_refresh_token is None
        await sessions.login("admin@example.com", "BrandNewPass456!")
        with pytest.raises(UnauthorizedError):
            await sessions.login("admin@example.com", PASSWORD)

    async def test_reset_token_is_single_use(self, sessions, notifier):
        await sessions.register("admin@example.com", PASSWORD)
        await sessions.send_reset_password_email("admin@example.com")
        token = token_from_link(notifier.last("reset_password")["link"])
        await sessions.reset_password(token, "BrandNewPass456!")

        with pytest.raises(UnauthorizedError):
            await sessions.reset_password(token, "AnotherPass789!")

    async def test_newer_request_supersedes_older(self, sessions, notifier):
        await sessions.register("admin@example.com", PASSWORD)
        await sessions.send_reset_password_email("admin@example.com")
        first = token_from_link(notifier.last("reset_password")["link"])
        await sessions.send_reset_password_email("admin@example.com")

        with pytest.raises(UnauthorizedError):
            await sessions.reset_password(first, "BrandNewPass456!")

    async def test_expired_pending_reset_is_purged(self, sessions, notifier, store, clock):
        registered = await sessions.register("admin@example.com", PASSWORD)
        await sessions.send_reset_password_email("admin@example.com")
        token = token_from_link(notifier.last("reset_password")["link"])
        store.update_user(registered.user.id, password_reset_expiry=clock() - timedelta(seconds=1))

        with pytest.raises(UnauthorizedError):
            await sessions.reset_password(token, "BrandNewPass456!")

        stored = store.get_user(registered.user.id)
        assert stored.password_reset_token_hash is None
        assert stored.password_reset_expiry is None

    async def test_unknown_email_is_silent(self, sessions, notifier):
        await sessions.send_reset_password_email("nobody@example.com")

        assert notifier.sent == []

    async def test_delivery_failure_keeps_pending_reset(self, sessions, notifier, store):
        registered = await sessions.register("admin@example.com", PASSWORD)
        notifier.fail = True

        with pytest.raises(DeliveryError):
            await sessions.send_reset_password_email("admin@example.com")

        assert store.get_user(registered.user.id).password_reset_token_hash

    async def test_empty_password_rejected(self, sessions):
        with pytest.raises(ValidationError):
            await sessions.reset_password("token", "")

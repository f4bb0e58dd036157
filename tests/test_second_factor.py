"""Unit tests for email one-time codes and trusted devices.

Tests for:
- Code generation and delivery
- Verification order: missing, exhausted, expired, mismatch, success
- Attempt accounting and the final-failure lock option
- Trusted device registration and validation
- Enabling and disabling the second factor
"""

from datetime import timedelta

import pytest

from gatehouse.service.errors import (
    DeliveryError,
    NotFoundError,
    SecondFactorExhaustedError,
    UnauthorizedError,
)
from gatehouse.service.second_factor import (
    SecondFactorEngine,
    SecondFactorState,
    state_for,
)
from gatehouse.storage.models import User


@pytest.fixture
def user(store):
    return store.create_user("user@example.com", "hash", bootstrap_admin=False)


def _wrong(code):
    return "000000" if code != "000000" else "111111"


class TestCodeGeneration:
    def test_codes_have_configured_length(self, second_factor, settings):
        for _ in range(50):
            code = second_factor.generate_code()
            assert code.isdigit()
            assert len(code) == settings.otp_length
            assert code[0] != "0"

    def test_device_tokens_are_hex(self, second_factor, settings):
        token = second_factor.generate_device_token()

        assert len(token) == settings.device_token_bytes * 2
        int(token, 16)


class TestSendCode:
    async def test_send_stores_hash_and_delivers(self, second_factor, store, notifier, user):
        await second_factor.send_code(user.id, user.email)
        message = notifier.last("second_factor_code")
        record = store.get_second_factor_code(user.id)

        assert message["to"] == user.email
        assert record.code_hash != message["code"]
        assert record.attempts == 0

    async def test_resend_replaces_code_and_resets_attempts(
        self, second_factor, store, notifier, user
    ):
        await second_factor.send_code(user.id, user.email)
        first = notifier.last("second_factor_code")["code"]
        with pytest.raises(UnauthorizedError):
            await second_factor.verify_code(user.id, _wrong(first))
        await second_factor.send_code(user.id, user.email)
        second = notifier.last("second_factor_code")["code"]

        assert store.get_second_factor_code(user.id).attempts == 0
        if first != second:
            with pytest.raises(UnauthorizedError):
                await second_factor.verify_code(user.id, first)
        assert await second_factor.verify_code(user.id, second) is True

    async def test_delivery_failure_propagates(self, second_factor, notifier, user):
        notifier.fail = True

        with pytest.raises(DeliveryError):
            await second_factor.send_code(user.id, user.email)


class TestVerifyCode:
    async def test_correct_code_is_consumed(self, second_factor, store, notifier, user):
        await second_factor.send_code(user.id, user.email)
        code = notifier.last("second_factor_code")["code"]

        assert await second_factor.verify_code(user.id, code) is True
        assert store.get_second_factor_code(user.id) is None
        with pytest.raises(UnauthorizedError) as exc_info:
            await second_factor.verify_code(user.id, code)
        assert exc_info.value.message == "no OTP"

    async def test_no_outstanding_code(self, second_factor, user):
        with pytest.raises(UnauthorizedError) as exc_info:
            await second_factor.verify_code(user.id, "123456")

        assert exc_info.value.message == "no OTP"

    async def test_mismatch_counts_attempts(self, second_factor, store, notifier, user):
        await second_factor.send_code(user.id, user.email)
        code = notifier.last("second_factor_code")["code"]

        for expected in (1, 2):
            with pytest.raises(UnauthorizedError) as exc_info:
                await second_factor.verify_code(user.id, _wrong(code))
            assert exc_info.value.message == "invalid code"
            assert store.get_second_factor_code(user.id).attempts == expected

        assert await second_factor.verify_code(user.id, code) is True

    async def test_exhaustion_reported_on_call_after_limit(
        self, second_factor, store, notifier, settings, user
    ):
        await second_factor.send_code(user.id, user.email)
        code = notifier.last("second_factor_code")["code"]
        for _ in range(settings.otp_max_attempts):
            with pytest.raises(UnauthorizedError) as exc_info:
                await second_factor.verify_code(user.id, _wrong(code))
            assert exc_info.value.message == "invalid code"

        # Even the right code is refused once the limit is reached
        with pytest.raises(SecondFactorExhaustedError):
            await second_factor.verify_code(user.id, code)
        assert store.get_second_factor_code(user.id) is None
        with pytest.raises(UnauthorizedError) as exc_info:
            await second_factor.verify_code(user.id, code)
        assert exc_info.value.message == "no OTP"

    async def test_lock_on_final_failure(
        self, store, hasher, notifier, locks, settings, clock, user
    ):
        engine = SecondFactorEngine(
            store,
            hasher,
            notifier,
            locks,
            settings.model_copy(update={"otp_lock_on_final_failure": True}),
            clock=clock,
        )
        await engine.send_code(user.id, user.email)
        code = notifier.last("second_factor_code")["code"]
        for _ in range(settings.otp_max_attempts):
            with pytest.raises(UnauthorizedError):
                await engine.verify_code(user.id, _wrong(code))

        assert store.get_second_factor_code(user.id) is None
        with pytest.raises(UnauthorizedError) as exc_info:
            await engine.verify_code(user.id, code)
        assert exc_info.value.message == "no OTP"

    async def test_expired_code(self, second_factor, store, notifier, settings, clock, user):
        await second_factor.send_code(user.id, user.email)
        code = notifier.last("second_factor_code")["code"]
        clock.advance(minutes=settings.otp_ttl_minutes, seconds=1)

        with pytest.raises(UnauthorizedError) as exc_info:
            await second_factor.verify_code(user.id, code)

        assert exc_info.value.message == "OTP expired"
        assert store.get_second_factor_code(user.id) is None


class TestTrustedDevices:
    async def test_create_and_validate(self, second_factor, store, user):
        raw = await second_factor.create_trusted_device(user.id, "Mozilla/5.0")
        devices = store.list_trusted_devices(user.id)

        assert len(devices) == 1
        assert devices[0].device_token_hash != raw
        assert await second_factor.validate_trusted_device(user.id, raw, "Mozilla/5.0") is True

    async def test_user_agent_must_match(self, second_factor, user):
        raw = await second_factor.create_trusted_device(user.id, "Mozilla/5.0")

        assert await second_factor.validate_trusted_device(user.id, raw, "curl/8.0") is False
        assert await second_factor.validate_trusted_device(user.id, raw, None) is False

    async def test_wrong_or_missing_token(self, second_factor, user):
        await second_factor.create_trusted_device(user.id, "Mozilla/5.0")

        assert await second_factor.validate_trusted_device(user.id, "deadbeef", "Mozilla/5.0") is False
        assert await second_factor.validate_trusted_device(user.id, None, "Mozilla/5.0") is False
        assert await second_factor.validate_trusted_device(user.id, "", "Mozilla/5.0") is False

    async def test_token_bound_to_owner(self, second_factor, store, user):
        other = store.create_user("other@example.com", "hash", bootstrap_admin=False)
        raw = await second_factor.create_trusted_device(user.id, "Mozilla/5.0")

        assert await second_factor.validate_trusted_device(other.id, raw, "Mozilla/5.0") is False

    async def test_expired_device(self, second_factor, settings, clock, user):
        raw = await second_factor.create_trusted_device(user.id, "Mozilla/5.0", days=1)
        clock.advance(days=1, seconds=1)

        assert await second_factor.validate_trusted_device(user.id, raw, "Mozilla/5.0") is False

    async def test_default_lifetime(self, second_factor, store, settings, user):
        await second_factor.create_trusted_device(user.id, "Mozilla/5.0")
        device = store.list_trusted_devices(user.id)[0]

        assert (device.expires_at - device.created_at).days == settings.trusted_device_ttl_days

    async def test_lifetime_measured_on_engine_clock(self, second_factor, store, clock, user):
        clock.advance(days=-90)
        raw = await second_factor.create_trusted_device(user.id, "Mozilla/5.0", days=2)
        device = store.list_trusted_devices(user.id)[0]

        assert device.created_at == clock.now
        assert device.expires_at == clock.now + timedelta(days=2)
        clock.advance(days=2)
        assert await second_factor.validate_trusted_device(user.id, raw, "Mozilla/5.0") is False

    async def test_zero_days_is_not_the_default(self, second_factor, store, user):
        raw = await second_factor.create_trusted_device(user.id, "Mozilla/5.0", days=0)
        device = store.list_trusted_devices(user.id)[0]

        assert device.expires_at == device.created_at
        assert await second_factor.validate_trusted_device(user.id, raw, "Mozilla/5.0") is False


class TestEnableDisable:
    async def test_toggle(self, second_factor, store, user):
        enabled = await second_factor.set_enabled(user.id, True)
        assert enabled.two_factor_enabled is True

        disabled = await second_factor.set_enabled(user.id, False)
        assert disabled.two_factor_enabled is False
        assert store.get_user(user.id).two_factor_enabled is False

    async def test_unknown_user(self, second_factor):
        with pytest.raises(NotFoundError):
            await second_factor.set_enabled("missing-user", True)


class TestStateFor:
    def _user(self, enabled):
        return User(id="u1", email="u@example.com", password_hash="h", two_factor_enabled=enabled)

    def test_states(self):
        assert state_for(self._user(False), session_verified=False) == SecondFactorState.NO_2FA
        assert state_for(self._user(True)) == SecondFactorState.PENDING
        assert (
            state_for(self._user(True), session_verified=True)
            == SecondFactorState.VERIFIED_THIS_SESSION
        )
        assert (
            state_for(self._user(True), session_verified=True, trusted_device_ok=True)
            == SecondFactorState.DEVICE_TRUSTED
        )

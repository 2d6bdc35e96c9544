"""Unit tests for AuthService flows against in-memory stores."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from project_auth.errors import (
    AccountLockedError,
    AlreadyVerifiedError,
    EmailDeliveryError,
    EmailInUseError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpInvalidError,
    OtpNotFoundError,
    OtpRateLimitedError,
    UserNotFoundError,
)
from project_auth.models.user import OtpPurpose
from project_auth.services.password_service import password_hasher
from project_auth.services.token_service import hash_token

PASSWORD = "Aa1!aaaa"


async def _register_and_verify(auth, email="a@x.com", password=PASSWORD, name="Alice"):
    user = await auth.service.register(email, password, name)
    await auth.service.verify_email(email, auth.mailer.last_code())
    return user


def _wrong_code(code: str) -> str:
    return "".join(str((int(d) + 1) % 10) for d in code)


# ---------------------------------------------------------------------------
# register
# ---------------------------------------------------------------------------

class TestRegister:
    async def test_creates_pending_user_and_mails_code(self, auth):
        user = await auth.service.register("A@X.com ", PASSWORD, "Alice")

        assert user.email == "a@x.com"
        assert user.verified is False
        assert len(auth.mailer.sent) == 1
        mail = auth.mailer.sent[0]
        assert mail["to"] == "a@x.com"
        assert mail["subject"] == "[Project Auth] Verify your email"
        code = auth.mailer.last_code()
        assert code in mail["html_body"]

    async def test_code_is_stored_hashed(self, auth):
        user = await auth.service.register("a@x.com", PASSWORD, "Alice")
        record = auth.otps.latest(user.id)

        assert record.code_hash != auth.mailer.last_code()
        assert record.code_hash.startswith("$argon2id$")

    async def test_password_is_stored_hashed(self, auth):
        user = await auth.service.register("a@x.com", PASSWORD, "Alice")

        stored = auth.users.password_hashes[user.id]
        assert stored != PASSWORD
        assert auth.service.passwords.verify(stored, PASSWORD)

    async def test_returned_user_has_no_password_fields(self, auth):
        user = await auth.service.register("a@x.com", PASSWORD, "Alice")
        dumped = user.model_dump(by_alias=True)

        assert not any("password" in key.lower() for key in dumped)

    async def test_verified_email_conflicts(self, auth):
        await _register_and_verify(auth)

        with pytest.raises(EmailInUseError) as exc_info:
            await auth.service.register("a@x.com", "Other1!pass", "Alice Again")

        assert exc_info.value.status_code == 409

    async def test_pending_registration_overwrites(self, auth):
        first = await auth.service.register("a@x.com", PASSWORD, "Alice")
        second = await auth.service.register("a@x.com", "Bb2@bbbb", "Alicia")

        assert second.id == first.id
        assert second.name == "Alicia"
        assert len(auth.users.users) == 1
        stored = auth.users.password_hashes[first.id]
        assert auth.service.passwords.verify(stored, "Bb2@bbbb")
        assert not auth.service.passwords.verify(stored, PASSWORD)

    async def test_mail_failure_surfaces(self, auth):
        auth.mailer.fail = True

        with pytest.raises(EmailDeliveryError) as exc_info:
            await auth.service.register("a@x.com", PASSWORD, "Alice")

        assert exc_info.value.code == "EMAIL_SEND_FAILED"
        assert exc_info.value.status_code == 503


# ---------------------------------------------------------------------------
# verify_email
# ---------------------------------------------------------------------------

class TestVerifyEmail:
    async def test_correct_code_verifies(self, auth):
        user = await auth.service.register("a@x.com", PASSWORD, "Alice")

        verified = await auth.service.verify_email("a@x.com", auth.mailer.last_code())

        assert verified.verified is True
        assert auth.otps.latest(user.id).consumed is True

    async def test_unknown_user(self, auth):
        with pytest.raises(UserNotFoundError):
            await auth.service.verify_email("nobody@x.com", "123456")

    async def test_wrong_code_leaves_code_usable(self, auth):
        user = await auth.service.register("a@x.com", PASSWORD, "Alice")
        code = auth.mailer.last_code()

        with pytest.raises(OtpInvalidError):
            await auth.service.verify_email("a@x.com", _wrong_code(code))

        assert auth.otps.latest(user.id).consumed is False
        verified = await auth.service.verify_email("a@x.com", code)
        assert verified.verified is True

    async def test_too_many_wrong_codes_consume_the_code(self, auth):
        user = await auth.service.register("a@x.com", PASSWORD, "Alice")
        code = auth.mailer.last_code()

        for _ in range(auth.settings.otp_max_attempts - 1):
            with pytest.raises(OtpInvalidError):
                await auth.service.verify_email("a@x.com", _wrong_code(code))
        with pytest.raises(OtpAttemptsExceededError):
            await auth.service.verify_email("a@x.com", _wrong_code(code))

        assert auth.otps.latest(user.id).consumed is True
        with pytest.raises(OtpNotFoundError):
            await auth.service.verify_email("a@x.com", code)

    async def test_new_code_restarts_the_count(self, auth, clock):
        await auth.service.register("a@x.com", PASSWORD, "Alice")
        first = auth.mailer.last_code()
        for _ in range(auth.settings.otp_max_attempts):
            with pytest.raises((OtpInvalidError, OtpAttemptsExceededError)):
                await auth.service.verify_email("a@x.com", _wrong_code(first))

        clock.advance(auth.settings.otp_cooldown_seconds)
        await auth.service.resend_otp("a@x.com")
        second = auth.mailer.last_code()
        with pytest.raises(OtpInvalidError):
            await auth.service.verify_email("a@x.com", _wrong_code(second))

        verified = await auth.service.verify_email("a@x.com", second)
        assert verified.verified is True

    async def test_code_cannot_be_reused(self, auth):
        user = await auth.service.register("a@x.com", PASSWORD, "Alice")
        code = auth.mailer.last_code()
        await auth.service.verify_email("a@x.com", code)

        # Put the account back to pending to prove the old code is spent
        auth.users.users[user.id] = auth.users.users[user.id].model_copy(
            update={"verified": False}
        )

        with pytest.raises(OtpNotFoundError):
            await auth.service.verify_email("a@x.com", code)

    async def test_second_code_invalidates_first(self, auth, clock):
        await auth.service.register("a@x.com", PASSWORD, "Alice")
        first_code = auth.mailer.last_code()

        clock.advance(auth.settings.otp_cooldown_seconds + 1)
        await auth.service.resend_otp("a@x.com")
        second_code = auth.mailer.last_code()

        if first_code != second_code:
            with pytest.raises((OtpInvalidError, OtpNotFoundError)):
                await auth.service.verify_email("a@x.com", first_code)

        verified = await auth.service.verify_email("a@x.com", second_code)
        assert verified.verified is True

    async def test_expired_code_fails_and_is_consumed(self, auth):
        user = await auth.service.register("a@x.com", PASSWORD, "Alice")
        code = auth.mailer.last_code()
        record = auth.otps.latest(user.id)
        auth.otps._replace(
            record.model_copy(
                update={"expires_at": datetime.now(timezone.utc) - timedelta(seconds=1)}
            )
        )

        with pytest.raises(OtpExpiredError):
            await auth.service.verify_email("a@x.com", code)

        assert auth.otps.latest(user.id).consumed is True
        assert auth.users.users[user.id].verified is False

    async def test_already_verified_is_idempotent(self, auth):
        await _register_and_verify(auth)

        again = await auth.service.verify_email("a@x.com", "garbage")

        assert again.verified is True

    async def test_no_active_code(self, auth):
        user = await auth.service.register("a@x.com", PASSWORD, "Alice")
        await auth.otps.consume(auth.otps.latest(user.id).id)

        with pytest.raises(OtpNotFoundError):
            await auth.service.verify_email("a@x.com", "123456")


# ---------------------------------------------------------------------------
# resend_otp
# ---------------------------------------------------------------------------

class TestResendOtp:
    async def test_within_cooldown_is_rate_limited(self, auth, clock):
        await auth.service.register("a@x.com", PASSWORD, "Alice")
        clock.advance(10)

        with pytest.raises(OtpRateLimitedError) as exc_info:
            await auth.service.resend_otp("a@x.com")

        err = exc_info.value
        assert err.status_code == 429
        assert err.retry_after_seconds == auth.settings.otp_cooldown_seconds - 10
        assert err.details["retryAfterSeconds"] == err.retry_after_seconds

    async def test_after_cooldown_issues_new_code(self, auth, clock):
        await auth.service.register("a@x.com", PASSWORD, "Alice")
        clock.advance(auth.settings.otp_cooldown_seconds)

        await auth.service.resend_otp("a@x.com")

        assert len(auth.mailer.sent) == 2

    async def test_unknown_user(self, auth):
        with pytest.raises(UserNotFoundError):
            await auth.service.resend_otp("nobody@x.com")

    async def test_verified_user(self, auth):
        await _register_and_verify(auth)

        with pytest.raises(AlreadyVerifiedError):
            await auth.service.resend_otp("a@x.com")


# ---------------------------------------------------------------------------
# login
# ---------------------------------------------------------------------------

class TestLogin:
    async def test_success_returns_tokens(self, auth):
        user = await _register_and_verify(auth)

        result = await auth.service.login("A@x.com", PASSWORD)

        assert result.authenticated
        assert result.user.id == user.id
        claims = auth.service.tokens.verify_access(result.access_token)
        assert claims["sub"] == str(user.id)
        assert claims["email"] == "a@x.com"
        assert result.refresh_token is not None
        assert hash_token(result.refresh_token) in auth.sessions.sessions

    async def test_unknown_email(self, auth):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            await auth.service.login("nobody@x.com", PASSWORD)

        assert exc_info.value.status_code == 401

    async def test_wrong_password(self, auth):
        await _register_and_verify(auth)

        with pytest.raises(InvalidCredentialsError):
            await auth.service.login("a@x.com", "wrong-password")

    async def test_unverified_account(self, auth):
        await auth.service.register("a@x.com", PASSWORD, "Alice")

        with pytest.raises(EmailNotVerifiedError) as exc_info:
            await auth.service.login("a@x.com", PASSWORD)

        assert exc_info.value.status_code == 403

    async def test_unverified_does_not_count_towards_lockout(self, auth):
        await auth.service.register("a@x.com", PASSWORD, "Alice")

        for _ in range(auth.settings.login_lockout_threshold + 1):
            with pytest.raises(EmailNotVerifiedError):
                await auth.service.login("a@x.com", PASSWORD)

        status = await auth.guard.is_login_locked("a@x.com")
        assert status.locked is False

    async def test_unverified_with_wrong_password_is_not_counted(self, auth):
        await auth.service.register("a@x.com", PASSWORD, "Alice")

        for _ in range(auth.settings.login_lockout_threshold + 1):
            with pytest.raises(EmailNotVerifiedError):
                await auth.service.login("a@x.com", "wrong-password")

        with pytest.raises(EmailNotVerifiedError):
            await auth.service.login("a@x.com", PASSWORD)
        assert "a@x.com" not in auth.guard._attempts

    async def test_unknown_email_runs_placeholder_verification(self, auth, monkeypatch):
        calls = []
        monkeypatch.setattr(auth.service.passwords, "verify_placeholder", calls.append)

        with pytest.raises(InvalidCredentialsError):
            await auth.service.login("nobody@x.com", PASSWORD)

        assert calls == [PASSWORD]

    async def test_outdated_hash_is_upgraded(self, auth):
        user = await _register_and_verify(auth)
        old_hash = auth.users.password_hashes[user.id]
        stronger = auth.settings.model_copy(update={"password_hash_memory_cost": 16})
        auth.service.passwords = password_hasher(stronger)

        result = await auth.service.login("a@x.com", PASSWORD)

        new_hash = auth.users.password_hashes[user.id]
        assert result.authenticated
        assert new_hash != old_hash
        assert "m=16," in new_hash
        assert auth.service.passwords.verify(new_hash, PASSWORD)

    async def test_current_hash_is_kept(self, auth):
        user = await _register_and_verify(auth)
        old_hash = auth.users.password_hashes[user.id]

        await auth.service.login("a@x.com", PASSWORD)

        assert auth.users.password_hashes[user.id] == old_hash

    async def test_lockout_after_threshold(self, auth, clock):
        await _register_and_verify(auth)
        threshold = auth.settings.login_lockout_threshold

        for attempt in range(1, threshold + 1):
            with pytest.raises(InvalidCredentialsError) as exc_info:
                await auth.service.login("a@x.com", "wrong-password")
            if attempt < threshold:
                assert exc_info.value.retry_after_seconds is None
            else:
                assert exc_info.value.retry_after_seconds == auth.settings.login_lockout_seconds

        with pytest.raises(AccountLockedError) as exc_info:
            await auth.service.login("a@x.com", PASSWORD)

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after_seconds == auth.settings.login_lockout_seconds

    async def test_success_after_lockout_expiry_clears_counter(self, auth, clock):
        await _register_and_verify(auth)
        for _ in range(auth.settings.login_lockout_threshold):
            with pytest.raises(InvalidCredentialsError):
                await auth.service.login("a@x.com", "wrong-password")

        clock.advance(auth.settings.login_lockout_seconds + 1)
        result = await auth.service.login("a@x.com", PASSWORD)

        assert result.authenticated
        assert "a@x.com" not in auth.guard._attempts

    async def test_locked_is_checked_before_user_lookup(self, auth):
        threshold = auth.settings.login_lockout_threshold
        for _ in range(threshold):
            with pytest.raises(InvalidCredentialsError):
                await auth.service.login("ghost@x.com", PASSWORD)

        with pytest.raises(AccountLockedError):
            await auth.service.login("ghost@x.com", PASSWORD)


# ---------------------------------------------------------------------------
# refresh_session / logout / get_profile
# ---------------------------------------------------------------------------

class TestRefreshSession:
    async def test_rotates_token(self, auth):
        await _register_and_verify(auth)
        login = await auth.service.login("a@x.com", PASSWORD)

        result = await auth.service.refresh_session(login.refresh_token)

        assert result.authenticated
        assert result.refresh_token != login.refresh_token
        assert auth.sessions.sessions[hash_token(login.refresh_token)].revoked is True
        assert auth.sessions.sessions[hash_token(result.refresh_token)].revoked is False

    async def test_reuse_of_rotated_token_fails_closed(self, auth):
        await _register_and_verify(auth)
        login = await auth.service.login("a@x.com", PASSWORD)

        first = await auth.service.refresh_session(login.refresh_token)
        second = await auth.service.refresh_session(login.refresh_token)

        assert first.authenticated
        assert not second.authenticated
        assert second.user is None
        assert second.clear_cookie is True

    async def test_reuse_keeps_other_sessions_by_default(self, auth):
        user = await _register_and_verify(auth)
        login = await auth.service.login("a@x.com", PASSWORD)
        await auth.service.refresh_session(login.refresh_token)

        await auth.service.refresh_session(login.refresh_token)

        assert len(auth.sessions.live_for(user.id)) == 1

    async def test_reuse_revokes_all_when_enabled(self, auth):
        user = await _register_and_verify(auth)
        auth.settings.refresh_reuse_revokes_all = True
        login = await auth.service.login("a@x.com", PASSWORD)
        await auth.service.refresh_session(login.refresh_token)

        await auth.service.refresh_session(login.refresh_token)

        assert auth.sessions.live_for(user.id) == []

    async def test_missing_token(self, auth):
        result = await auth.service.refresh_session(None)

        assert not result.authenticated
        assert result.clear_cookie is False

    async def test_garbage_token_clears_cookie(self, auth):
        result = await auth.service.refresh_session("not-a-jwt")

        assert not result.authenticated
        assert result.clear_cookie is True

    async def test_access_token_is_not_a_refresh_token(self, auth):
        await _register_and_verify(auth)
        login = await auth.service.login("a@x.com", PASSWORD)

        result = await auth.service.refresh_session(login.access_token)

        assert not result.authenticated

    async def test_unknown_session(self, auth):
        token = auth.service.tokens.sign_refresh({"sub": str(uuid4())}, token_id=uuid4())

        result = await auth.service.refresh_session(token)

        assert not result.authenticated
        assert result.clear_cookie is True

    async def test_expired_session_row(self, auth):
        await _register_and_verify(auth)
        login = await auth.service.login("a@x.com", PASSWORD)
        token_hash = hash_token(login.refresh_token)
        auth.sessions.sessions[token_hash] = auth.sessions.sessions[token_hash].model_copy(
            update={"expires_at": datetime.now(timezone.utc) - timedelta(seconds=1)}
        )

        result = await auth.service.refresh_session(login.refresh_token)

        assert not result.authenticated

    async def test_deleted_user_revokes_session(self, auth):
        user = await _register_and_verify(auth)
        login = await auth.service.login("a@x.com", PASSWORD)
        del auth.users.users[user.id]

        result = await auth.service.refresh_session(login.refresh_token)

        assert not result.authenticated
        assert auth.sessions.sessions[hash_token(login.refresh_token)].revoked is True


class TestLogout:
    async def test_revokes_session(self, auth):
        await _register_and_verify(auth)
        login = await auth.service.login("a@x.com", PASSWORD)

        result = await auth.service.logout(login.refresh_token)

        assert result.clear_cookie is True
        assert auth.sessions.sessions[hash_token(login.refresh_token)].revoked is True
        after = await auth.service.refresh_session(login.refresh_token)
        assert not after.authenticated

    async def test_without_token_succeeds(self, auth):
        result = await auth.service.logout(None)

        assert result.clear_cookie is True
        assert not result.authenticated

    async def test_unknown_token_succeeds(self, auth):
        result = await auth.service.logout("whatever")

        assert result.clear_cookie is True


class TestGetProfile:
    async def test_returns_user(self, auth):
        user = await _register_and_verify(auth)

        profile = await auth.service.get_profile(user.id)

        assert profile.email == "a@x.com"
        assert profile.verified is True

    async def test_unknown_user(self, auth):
        with pytest.raises(UserNotFoundError):
            await auth.service.get_profile(uuid4())


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------

class TestPasswordReset:
    async def test_forgot_password_mails_reset_link(self, auth):
        await _register_and_verify(auth)

        await auth.service.forgot_password("a@x.com")

        mail = auth.mailer.sent[-1]
        code = auth.mailer.last_code()
        assert mail["subject"] == "[Project Auth] Reset your password"
        assert f"http://localhost:5173/reset-password?email=a%40x.com&token={code}" in mail["text_body"]

    async def test_forgot_password_unknown_email_is_silent(self, auth):
        await auth.service.forgot_password("nobody@x.com")

        assert auth.mailer.sent == []

    async def test_forgot_password_unverified_is_silent(self, auth):
        await auth.service.register("a@x.com", PASSWORD, "Alice")

        await auth.service.forgot_password("a@x.com")

        assert len(auth.mailer.sent) == 1

    async def test_forgot_password_cooldown(self, auth):
        await _register_and_verify(auth)
        await auth.service.forgot_password("a@x.com")

        with pytest.raises(OtpRateLimitedError):
            await auth.service.forgot_password("a@x.com")

    async def test_forgot_password_cooldown_applies_to_unknown_email(self, auth):
        await auth.service.forgot_password("nobody@x.com")

        with pytest.raises(OtpRateLimitedError):
            await auth.service.forgot_password("nobody@x.com")

    async def test_reset_password_changes_password_and_revokes_sessions(self, auth):
        user = await _register_and_verify(auth)
        login = await auth.service.login("a@x.com", PASSWORD)
        await auth.service.forgot_password("a@x.com")

        await auth.service.reset_password("a@x.com", auth.mailer.last_code(), "New1!password")

        assert auth.sessions.live_for(user.id) == []
        assert auth.otps.latest(user.id, OtpPurpose.RESET_PASSWORD).consumed is True
        refreshed = await auth.service.refresh_session(login.refresh_token)
        assert not refreshed.authenticated
        with pytest.raises(InvalidCredentialsError):
            await auth.service.login("a@x.com", PASSWORD)
        result = await auth.service.login("a@x.com", "New1!password")
        assert result.authenticated

    async def test_reset_password_wrong_code(self, auth):
        await _register_and_verify(auth)
        await auth.service.forgot_password("a@x.com")

        with pytest.raises(OtpInvalidError):
            await auth.service.reset_password(
                "a@x.com", _wrong_code(auth.mailer.last_code()), "New1!password"
            )

    async def test_reset_code_cannot_be_guessed_indefinitely(self, auth):
        await _register_and_verify(auth)
        await auth.service.forgot_password("a@x.com")
        code = auth.mailer.last_code()

        outcomes = []
        for _ in range(auth.settings.otp_max_attempts + 3):
            try:
                await auth.service.reset_password("a@x.com", _wrong_code(code), "New1!password")
            except (OtpInvalidError, OtpAttemptsExceededError, OtpNotFoundError) as exc:
                outcomes.append(exc.code)

        assert outcomes[auth.settings.otp_max_attempts - 1] == "OTP_ATTEMPTS_EXCEEDED"
        assert set(outcomes[auth.settings.otp_max_attempts:]) == {"OTP_NOT_FOUND"}
        with pytest.raises(OtpNotFoundError):
            await auth.service.reset_password("a@x.com", code, "New1!password")

    async def test_reset_password_unknown_email(self, auth):
        with pytest.raises(OtpNotFoundError):
            await auth.service.reset_password("nobody@x.com", "123456", "New1!password")

    async def test_verification_code_cannot_reset_password(self, auth):
        await auth.service.register("a@x.com", PASSWORD, "Alice")

        with pytest.raises(OtpNotFoundError):
            await auth.service.reset_password("a@x.com", auth.mailer.last_code(), "New1!password")


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

async def test_register_verify_login_refresh_scenario(auth):
    await auth.service.register("a@x.com", PASSWORD, "Alice")
    code = auth.mailer.last_code()

    with pytest.raises(OtpInvalidError):
        await auth.service.verify_email("a@x.com", _wrong_code(code))

    verified = await auth.service.verify_email("a@x.com", code)
    assert verified.verified is True

    login = await auth.service.login("a@x.com", PASSWORD)
    assert login.access_token and login.refresh_token

    refreshed = await auth.service.refresh_session(login.refresh_token)
    assert refreshed.access_token
    assert refreshed.refresh_token != login.refresh_token

    reused = await auth.service.refresh_session(login.refresh_token)
    assert reused.access_token is None

"""Registration, email verification, login and refresh-session flows.

Per-account lifecycle: unregistered -> pending verification -> verified.
Registering again while pending overwrites the name and password and
issues a fresh code; registering a verified email is a conflict.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode
from uuid import UUID, uuid4

import asyncpg
import structlog

from project_auth.config import Settings
from project_auth.errors import (
    AccountLockedError,
    AlreadyVerifiedError,
    EmailInUseError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidTokenError,
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpInvalidError,
    OtpNotFoundError,
    OtpRateLimitedError,
    UserNotFoundError,
)
from project_auth.models.user import EmailOtp, OtpPurpose, User
from project_auth.services.email_service import EmailService, render_email_template
from project_auth.services.otp_service import (
    EmailOtpService,
    build_otp_expiry,
    generate_otp,
)
from project_auth.services.password_service import (
    CredentialHasher,
    otp_hasher,
    password_hasher,
)
from project_auth.services.rate_guard import RateGuard, get_rate_guard
from project_auth.services.session_service import RefreshSessionService
from project_auth.services.token_service import TokenService, hash_token
from project_auth.services.user_service import UserService

logger = structlog.get_logger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _code_identifier(purpose: OtpPurpose, email: str) -> str:
    return f"code:{purpose.value}:{email}"


@dataclass
class SessionResult:
    """Outcome of login, refresh or logout.

    ``refresh_token`` is the raw token the caller must place in the
    refresh cookie; it never goes into a response body. ``clear_cookie``
    asks the caller to delete the cookie instead.
    """

    access_token: Optional[str] = None
    user: Optional[User] = None
    refresh_token: Optional[str] = None
    clear_cookie: bool = False

    @property
    def authenticated(self) -> bool:
        return self.access_token is not None


class AuthService:
    """Composes hashing, codes, tokens, throttling and storage into auth flows."""

    def __init__(
        self,
        settings: Settings,
        users: UserService,
        otps: EmailOtpService,
        sessions: RefreshSessionService,
        tokens: TokenService,
        passwords: CredentialHasher,
        otp_codes: CredentialHasher,
        rate_guard: RateGuard,
        mailer: EmailService,
    ):
        self.settings = settings
        self.users = users
        self.otps = otps
        self.sessions = sessions
        self.tokens = tokens
        self.passwords = passwords
        self.otp_codes = otp_codes
        self.rate_guard = rate_guard
        self.mailer = mailer

    @classmethod
    def from_pool(
        cls,
        settings: Settings,
        pool: asyncpg.Pool,
        rate_guard: Optional[RateGuard] = None,
        mailer: Optional[EmailService] = None,
    ) -> "AuthService":
        """Wire the service against a database pool."""
        return cls(
            settings=settings,
            users=UserService(pool),
            otps=EmailOtpService(pool),
            sessions=RefreshSessionService(pool),
            tokens=TokenService.from_settings(settings),
            passwords=password_hasher(settings),
            otp_codes=otp_hasher(settings),
            rate_guard=rate_guard or get_rate_guard(),
            mailer=mailer or EmailService(settings),
        )

    # ------------------------------------------------------------------
    # Registration and verification
    # ------------------------------------------------------------------

    async def register(self, email: str, password: str, name: str) -> User:
        """Create or refresh a pending account and email it a code.

        Raises:
            EmailInUseError: If the email belongs to a verified account
            EmailDeliveryError: If the verification email cannot be sent
        """
        email = normalize_email(email)
        existing = await self.users.get_by_email(email)

        if existing is not None and existing[0].verified:
            raise EmailInUseError()

        password_hash = self.passwords.hash(password)

        if existing is not None:
            user = await self.users.update_pending_user(existing[0].id, name, password_hash)
            if user is None:
                user = await self.users.create_user(email, password_hash, name)
        else:
            user = await self.users.create_user(email, password_hash, name)

        await self._issue_verification_code(user)
        logger.info("user_registered", user_id=str(user.id), email=email)
        return user

    async def verify_email(self, email: str, code: str) -> User:
        """Redeem a verification code.

        Already-verified accounts succeed without looking at codes.

        Raises:
            UserNotFoundError, OtpNotFoundError, OtpExpiredError, OtpInvalidError,
            OtpAttemptsExceededError
        """
        email = normalize_email(email)
        found = await self.users.get_by_email(email)
        if found is None:
            raise UserNotFoundError()

        user, _ = found
        if user.verified:
            return user

        record = await self._redeemable_code(user, OtpPurpose.VERIFY_EMAIL, code)
        updated = await self.otps.consume_and_update_user(record.id, user.id, verified=True)
        if updated is None:
            raise OtpNotFoundError()

        logger.info("email_verified", user_id=str(user.id))
        return updated

    async def resend_otp(self, email: str) -> None:
        """Issue a new verification code, subject to the resend cooldown.

        Raises:
            UserNotFoundError, AlreadyVerifiedError, OtpRateLimitedError,
            EmailDeliveryError
        """
        email = normalize_email(email)
        found = await self.users.get_by_email(email)
        if found is None:
            raise UserNotFoundError()

        user, _ = found
        if user.verified:
            raise AlreadyVerifiedError()

        cooldown = await self.rate_guard.check_otp_cooldown(
            email, self.settings.otp_cooldown_seconds
        )
        if not cooldown.allowed:
            logger.info(
                "otp_resend_throttled",
                email=email,
                retry_after_seconds=cooldown.retry_after_seconds,
            )
            raise OtpRateLimitedError(retry_after_seconds=cooldown.retry_after_seconds)

        await self._issue_verification_code(user)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def forgot_password(self, email: str) -> None:
        """Email a reset code if a verified account exists.

        The outcome is the same whether or not the account exists.

        Raises:
            OtpRateLimitedError: If a reset was requested within the cooldown
            EmailDeliveryError: If the reset email cannot be sent
        """
        email = normalize_email(email)
        identifier = f"reset:{email}"

        cooldown = await self.rate_guard.check_otp_cooldown(
            identifier, self.settings.otp_cooldown_seconds
        )
        if not cooldown.allowed:
            raise OtpRateLimitedError(retry_after_seconds=cooldown.retry_after_seconds)

        found = await self.users.get_by_email(email)
        if found is None or not found[0].verified:
            logger.info("password_reset_skipped", email=email)
            await self.rate_guard.mark_otp_sent(identifier)
            return

        await self._issue_reset_code(found[0])

    async def reset_password(self, email: str, code: str, new_password: str) -> User:
        """Set a new password using an emailed reset code.

        All refresh sessions of the account are revoked afterwards.

        Raises:
            OtpNotFoundError, OtpExpiredError, OtpInvalidError,
            OtpAttemptsExceededError
        """
        email = normalize_email(email)
        found = await self.users.get_by_email(email)
        if found is None:
            raise OtpNotFoundError()

        user, _ = found
        record = await self._redeemable_code(user, OtpPurpose.RESET_PASSWORD, code)
        updated = await self.otps.consume_and_update_user(
            record.id, user.id, password_hash=self.passwords.hash(new_password)
        )
        if updated is None:
            raise OtpNotFoundError()

        await self.sessions.revoke_all_for_user(user.id)
        await self.rate_guard.reset_login_attempts(email)
        logger.info("password_reset", user_id=str(user.id))
        return updated

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> SessionResult:
        """Authenticate with email and password.

        Unknown emails are verified against a placeholder hash. A hash made
        with outdated cost parameters is replaced after a successful login.

        Raises:
            AccountLockedError: While the identifier is locked out, checked
                before anything about the credentials is revealed
            InvalidCredentialsError: Unknown email or wrong password
            EmailNotVerifiedError: Unverified account; not counted as a
                failed attempt
        """
        email = normalize_email(email)

        lock = await self.rate_guard.is_login_locked(email)
        if lock.locked:
            logger.warning("login_locked", email=email, retry_after_seconds=lock.retry_after_seconds)
            raise AccountLockedError(retry_after_seconds=lock.retry_after_seconds)

        found = await self.users.get_by_email(email)
        if found is None:
            self.passwords.verify_placeholder(password)
            raise await self._failed_login(email)

        user, password_hash = found
        if not user.verified:
            raise EmailNotVerifiedError()

        if not self.passwords.verify(password_hash, password):
            raise await self._failed_login(email)

        await self.rate_guard.reset_login_attempts(email)

        if self.passwords.needs_rehash(password_hash):
            await self.users.update_password_hash(user.id, self.passwords.hash(password))
            logger.info("password_rehashed", user_id=str(user.id))

        access_token = self._access_token_for(user)
        refresh_token = await self._open_session(user.id)

        logger.info("user_logged_in", user_id=str(user.id))
        return SessionResult(access_token=access_token, user=user, refresh_token=refresh_token)

    async def refresh_session(self, refresh_token: Optional[str]) -> SessionResult:
        """Exchange a refresh token for a new access token, rotating it.

        Every failure yields an empty result; all but a missing token also
        ask for the cookie to be cleared.
        """
        if not refresh_token:
            return SessionResult()

        try:
            self.tokens.verify_refresh(refresh_token)
        except InvalidTokenError:
            return SessionResult(clear_cookie=True)

        token_hash = hash_token(refresh_token)
        stored = await self.sessions.get_by_hash(token_hash)

        if stored is None:
            logger.warning("refresh_session_not_found")
            return SessionResult(clear_cookie=True)

        if stored.revoked:
            await self._on_refresh_reuse(stored.user_id)
            return SessionResult(clear_cookie=True)

        if stored.expires_at < datetime.now(timezone.utc):
            logger.info("refresh_session_expired", user_id=str(stored.user_id))
            return SessionResult(clear_cookie=True)

        user = await self.users.get_by_id(stored.user_id)
        if user is None:
            await self.sessions.revoke(token_hash)
            logger.warning("refresh_session_user_missing", user_id=str(stored.user_id))
            return SessionResult(clear_cookie=True)

        new_refresh_token = self._sign_refresh_for(user.id)
        rotated = await self.sessions.rotate(
            token_hash,
            user.id,
            hash_token(new_refresh_token),
            self._refresh_expiry(),
        )
        if not rotated:
            return SessionResult(clear_cookie=True)

        return SessionResult(
            access_token=self._access_token_for(user),
            user=user,
            refresh_token=new_refresh_token,
        )

    async def logout(self, refresh_token: Optional[str]) -> SessionResult:
        """Revoke the presented refresh session, if any. Always succeeds."""
        if refresh_token:
            await self.sessions.revoke(hash_token(refresh_token))
        return SessionResult(clear_cookie=True)

    async def get_profile(self, user_id: UUID) -> User:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _failed_login(self, email: str) -> InvalidCredentialsError:
        attempt = await self.rate_guard.register_failed_login(
            email,
            threshold=self.settings.login_lockout_threshold,
            lockout_seconds=self.settings.login_lockout_seconds,
        )
        logger.info("login_failed", email=email, attempts=attempt.count)

        if attempt.locked_until is not None:
            logger.warning("login_lockout_triggered", email=email)
            return InvalidCredentialsError(
                retry_after_seconds=self.settings.login_lockout_seconds
            )
        return InvalidCredentialsError()

    async def _on_refresh_reuse(self, user_id: UUID) -> None:
        logger.warning("refresh_token_reuse_detected", user_id=str(user_id))
        if self.settings.refresh_reuse_revokes_all:
            await self.sessions.revoke_all_for_user(user_id)

    def _access_token_for(self, user: User) -> str:
        return self.tokens.sign_access({"sub": str(user.id), "email": user.email})

    def _sign_refresh_for(self, user_id: UUID) -> str:
        return self.tokens.sign_refresh({"sub": str(user_id)}, token_id=uuid4())

    def _refresh_expiry(self) -> datetime:
        return datetime.now(timezone.utc) + self.tokens.refresh_ttl

    async def _open_session(self, user_id: UUID) -> str:
        refresh_token = self._sign_refresh_for(user_id)
        await self.sessions.create(user_id, hash_token(refresh_token), self._refresh_expiry())
        return refresh_token

    async def _redeemable_code(
        self, user: User, purpose: OtpPurpose, code: str
    ) -> EmailOtp:
        """Return the live code record if ``code`` matches it.

        Wrong codes are counted per purpose and email; reaching
        ``otp_max_attempts`` consumes the live code.
        """
        record = await self.otps.get_latest_active(user.id, purpose)
        if record is None:
            raise OtpNotFoundError()

        if record.expires_at < datetime.now(timezone.utc):
            await self.otps.consume(record.id)
            logger.info("otp_expired", user_id=str(user.id), purpose=purpose.value)
            raise OtpExpiredError()

        if not self.otp_codes.verify(record.code_hash, code):
            attempt = await self.rate_guard.register_failed_code(
                _code_identifier(purpose, user.email),
                threshold=self.settings.otp_max_attempts,
                lockout_seconds=self.settings.otp_ttl_minutes * 60,
            )
            logger.info(
                "otp_mismatch",
                user_id=str(user.id),
                purpose=purpose.value,
                attempts=attempt.count,
            )
            if attempt.locked_until is not None:
                await self.otps.consume(record.id)
                logger.warning("otp_attempts_exceeded", user_id=str(user.id), purpose=purpose.value)
                raise OtpAttemptsExceededError()
            raise OtpInvalidError()

        await self.rate_guard.reset_code_attempts(_code_identifier(purpose, user.email))
        return record

    async def _store_new_code(self, user: User, purpose: OtpPurpose) -> str:
        code = generate_otp(self.settings.otp_length)
        await self.otps.replace_active(
            user.id,
            purpose,
            self.otp_codes.hash(code),
            build_otp_expiry(self.settings.otp_ttl_minutes),
        )
        await self.rate_guard.reset_code_attempts(_code_identifier(purpose, user.email))
        return code

    async def _issue_verification_code(self, user: User) -> None:
        code = await self._store_new_code(user, OtpPurpose.VERIFY_EMAIL)
        app_name = self.settings.app_name
        ttl = self.settings.otp_ttl_minutes

        html_body = render_email_template(
            "otp",
            {
                "subject": "Verify your email",
                "name": user.name or user.email,
                "code": code,
                "appName": app_name,
                "expiresMinutes": ttl,
            },
        )
        text_body = f"Your {app_name} verification code is {code} (expires in {ttl} minutes)."

        await self.mailer.send_mail(
            to=user.email,
            subject=f"[{app_name}] Verify your email",
            html_body=html_body,
            text_body=text_body,
        )
        await self.rate_guard.mark_otp_sent(user.email)

    async def _issue_reset_code(self, user: User) -> None:
        code = await self._store_new_code(user, OtpPurpose.RESET_PASSWORD)
        app_name = self.settings.app_name
        ttl = self.settings.otp_ttl_minutes
        query = urlencode({"email": user.email, "token": code})
        reset_url = f"{self.settings.app_url.rstrip('/')}/reset-password?{query}"

        html_body = render_email_template(
            "reset_password",
            {
                "subject": "Reset your password",
                "name": user.name or user.email,
                "code": code,
                "resetUrl": reset_url,
                "appName": app_name,
                "expiresMinutes": ttl,
            },
        )
        text_body = (
            f"Reset your {app_name} password: {reset_url}\n"
            f"Code: {code} (expires in {ttl} minutes)."
        )

        await self.mailer.send_mail(
            to=user.email,
            subject=f"[{app_name}] Reset your password",
            html_body=html_body,
            text_body=text_body,
        )
        await self.rate_guard.mark_otp_sent(f"reset:{user.email}")

"""
auth/flows.py -- The authentication flow controller.

AuthFlow is the per-account state machine behind every auth route: register,
login, refresh, logout, password reset/change, email verification, external
identity linking, and two-factor enrollment/verification. It owns no mutable
state of its own; everything durable lives in the AccountStore.

Rules every operation follows:
  - Input shape is checked first (auth/validation.py) and reported as one
    ValidationFailed carrying every FieldError.
  - bcrypt and store calls run through run_in_threadpool so the event loop
    keeps serving other requests while they block.
  - A state transition is written with a single store.save() guarded by the
    row_version the flow read. A revocation (new hash + token_version bump +
    refresh session cleared) commits whole or not at all, and a flow that
    lost a race gets ConcurrentUpdate instead of writing its stale copy back.
  - Session bookkeeping (refresh session, 2FA challenge, backup codes) uses
    the store's column-scoped compare-and-set writes, so a login can never
    undo a reset or a consumed backup code that committed after its read.
  - Emails are submitted to the dispatcher only after that save returns.

Single active session: login, OAuth linking, and 2FA verification all
overwrite the stored refresh token, provided the token_version they read is
still current. Two concurrent logins race on that field and the last writer
wins; the loser's refresh token stops working at its next use.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from auth.errors import (
    AlreadyVerified,
    AuthError,
    ConcurrentUpdate,
    DuplicateAccount,
    EmailNotVerified,
    ExternalIdentityError,
    ExternalIdentityOnly,
    FieldError,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidTwoFactorCode,
    NotFound,
    SamePassword,
    TwoFactorAlreadyEnabled,
    TwoFactorNotPending,
    ValidationFailed,
)
from auth.models import (
    Account,
    AccountUpdate,
    AuthResult,
    ExternalIdentity,
    TwoFactorChallenge,
    TwoFactorEnrollment,
)
from auth.notifier import RESET_PASSWORD, VERIFY_EMAIL, Notification, redact_email
from auth.passwords import PasswordHasher
from auth.store import AccountStore, StaleAccountError
from auth.tokens import REFRESH, TWO_FACTOR, TokenIssuer
from auth.two_factor import TwoFactorEngine
from auth.validation import (
    NAME_MAX_LENGTH,
    NAME_MIN_LENGTH,
    check_email,
    check_name,
    check_password,
    check_required,
    normalize_email,
)
from core.config import Settings

logger = logging.getLogger("accountgate.auth.flows")

FORGOT_PASSWORD_MESSAGE = "If an account exists with this email, a password reset link has been sent"
RESEND_VERIFICATION_MESSAGE = "If an account exists with this email, a verification link has been sent"


def _expires_in(seconds: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat()


def _is_live(expires_iso: str | None) -> bool:
    if not expires_iso:
        return False
    return datetime.fromisoformat(expires_iso) > datetime.now(timezone.utc)


def _raise_if_invalid(errors: list[FieldError]) -> None:
    if errors:
        raise ValidationFailed(errors)


def _revoke_sessions(account: Account) -> None:
    """Invalidate every outstanding token for account (caller saves)."""
    account.token_version += 1
    account.refresh_token = None
    account.refresh_token_expires = None
    account.two_factor_challenge = None


class AuthFlow:
    """Orchestrates store, hasher, issuer and two-factor engine per request."""

    def __init__(
        self,
        store: AccountStore,
        issuer: TokenIssuer,
        hasher: PasswordHasher,
        two_factor: TwoFactorEngine,
        dispatcher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.hasher = hasher
        self.two_factor = two_factor
        self.dispatcher = dispatcher
        self._verification_ttl = settings.email_verification_expire_seconds
        self._reset_ttl = settings.password_reset_expire_seconds

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, account_id: int) -> Account:
        account = await run_in_threadpool(self.store.find_by_id, account_id, True)
        if account is None:
            raise NotFound("User not found")
        return account

    async def _save(self, account: Account, conflict: AuthError | None = None) -> Account:
        """store.save() with a lost race reported as conflict (ConcurrentUpdate by default)."""
        try:
            return await run_in_threadpool(self.store.save, account)
        except StaleAccountError as exc:
            logger.info("Discarded stale write for account %s", account.id)
            raise (conflict or ConcurrentUpdate()) from exc

    async def _start_session(self, account: Account, revoked: AuthError | None = None) -> AuthResult:
        """Issue a pair at the account's token_version and store the refresh token.

        The previous refresh token, if any, is overwritten. If the version was
        bumped after account was read, nothing is stored and revoked (default
        InvalidOrExpiredToken) is raised.
        """
        tokens = self.issuer.issue_pair(account)
        saved = await run_in_threadpool(
            self.store.set_refresh_session,
            account.id,
            tokens.refresh_token,
            self.issuer.refresh_expiry().isoformat(),
            account.token_version,
        )
        if saved is None:
            raise revoked or InvalidOrExpiredToken()
        return AuthResult(account=saved, tokens=tokens)

    def _new_verification_token(self, account: Account) -> str:
        token = secrets.token_hex(32)
        account.email_verification_token = token
        account.email_verification_expires = _expires_in(self._verification_ttl)
        return token

    def _notify(self, kind: str, account: Account, token: str) -> None:
        try:
            self.dispatcher.submit(Notification(kind=kind, to=account.email, token=token, name=account.name))
        except Exception:
            logger.exception("Could not queue %s email for account %s", kind, account.id)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    async def register(self, name: str, email: str, password: str) -> AuthResult:
        _raise_if_invalid(check_name(name) + check_email(email) + check_password(password))
        email = normalize_email(email)

        if await run_in_threadpool(self.store.find_by_email, email) is not None:
            raise DuplicateAccount()

        account = Account(
            name=name.strip(),
            email=email,
            hashed_password=await run_in_threadpool(self.hasher.hash, password),
        )
        verification_token = self._new_verification_token(account)
        try:
            account = await run_in_threadpool(self.store.create, account)
        except IntegrityError as exc:
            raise DuplicateAccount() from exc

        result = await self._start_session(account)
        self._notify(VERIFY_EMAIL, result.account, verification_token)
        logger.info("Account %s registered (%s)", result.account.id, redact_email(email))
        return result

    async def login(self, email: str, password: str) -> AuthResult | TwoFactorChallenge:
        """Authenticate with email + password.

        Unknown email and wrong password both raise InvalidCredentials, and
        both pay for a full bcrypt check [C1].
        """
        _raise_if_invalid(check_email(email) + check_required(password, "password", "Password"))
        email = normalize_email(email)

        account = await run_in_threadpool(self.store.find_by_email, email, True)
        if account is not None and account.hashed_password is None:
            raise ExternalIdentityOnly()

        hashed = account.hashed_password if account is not None else None
        if not await run_in_threadpool(self.hasher.verify_login, password, hashed) or account is None:
            logger.info("Failed login for %s", redact_email(email))
            raise InvalidCredentials()

        if not account.is_email_verified:
            raise EmailNotVerified("Please verify your email before logging in.")

        if account.is_two_factor_enabled:
            challenge_token = self.issuer.issue_challenge_token(account)
            stored = await run_in_threadpool(
                self.store.set_two_factor_challenge, account.id, challenge_token, account.token_version
            )
            if not stored:
                raise InvalidCredentials()
            return TwoFactorChallenge(
                account=account,
                challenge_token=challenge_token,
                expires_in=self.issuer.challenge_ttl,
            )
        return await self._start_session(account, revoked=InvalidCredentials())

    async def refresh(self, refresh_token: str | None) -> str:
        """Exchange a live refresh token for a new access token.

        The refresh token itself is not rotated. It must be the one currently
        stored for the account (a superseded token is a replay), unexpired,
        and stamped with the live token_version.
        """
        claims = self.issuer.decode(refresh_token, REFRESH)
        if claims is None:
            raise InvalidOrExpiredToken()

        account = await run_in_threadpool(self.store.find_by_id, claims.account_id, True)
        if (
            account is None
            or account.refresh_token is None
            or not hmac.compare_digest(account.refresh_token, refresh_token)
            or not _is_live(account.refresh_token_expires)
            or account.token_version != claims.token_version
        ):
            raise InvalidOrExpiredToken()

        return self.issuer.issue_access_token(account)

    async def logout(self, refresh_token: str | None) -> None:
        """End the refresh session named by refresh_token. Never raises."""
        claims = self.issuer.decode(refresh_token, REFRESH)
        if claims is None:
            return
        try:
            cleared = await run_in_threadpool(self.store.clear_refresh_session, claims.account_id, refresh_token)
        except SQLAlchemyError:
            logger.exception("Logout could not clear the refresh session for account %s", claims.account_id)
            return
        if cleared:
            logger.info("Account %s logged out", claims.account_id)

    # ------------------------------------------------------------------
    # Password reset and change
    # ------------------------------------------------------------------

    async def forgot_password(self, email: str) -> str:
        """Start a reset for email. The returned message never reveals whether it exists."""
        _raise_if_invalid(check_email(email))
        account = await run_in_threadpool(self.store.find_by_email, normalize_email(email), True)
        if account is None:
            return FORGOT_PASSWORD_MESSAGE

        token = secrets.token_hex(32)
        account.reset_password_token = token
        account.reset_password_expires = _expires_in(self._reset_ttl)
        account = await self._save(account)
        self._notify(RESET_PASSWORD, account, token)
        logger.info("Password reset requested for account %s", account.id)
        return FORGOT_PASSWORD_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> None:
        _raise_if_invalid(check_required(token, "token", "Reset token") + check_password(new_password))

        account = await run_in_threadpool(self.store.find_by_reset_token, token, True)
        if account is None:
            raise InvalidOrExpiredToken("Invalid or expired reset token", status_code=400)

        account.hashed_password = await run_in_threadpool(self.hasher.hash, new_password)
        account.reset_password_token = None
        account.reset_password_expires = None
        _revoke_sessions(account)
        await self._save(account, InvalidOrExpiredToken("Invalid or expired reset token", status_code=400))
        logger.info("Password reset for account %s; all sessions revoked", account.id)

    async def change_password(self, account_id: int, current_password: str, new_password: str) -> None:
        _raise_if_invalid(
            check_required(current_password, "currentPassword", "Current password")
            + check_password(new_password, "newPassword")
        )
        account = await self._load(account_id)
        if account.hashed_password is None:
            raise ExternalIdentityOnly()
        if not await run_in_threadpool(self.hasher.verify, current_password, account.hashed_password):
            raise InvalidCredentials("Current password is incorrect")
        if current_password == new_password:
            raise SamePassword()

        account.hashed_password = await run_in_threadpool(self.hasher.hash, new_password)
        _revoke_sessions(account)
        await self._save(account)
        logger.info("Password changed for account %s; all sessions revoked", account.id)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    async def verify_email(self, token: str) -> Account:
        _raise_if_invalid(check_required(token, "token", "Verification token"))

        account = await run_in_threadpool(self.store.find_by_verification_token, token, True)
        if account is None:
            raise InvalidOrExpiredToken("Invalid or expired verification token", status_code=400)
        if account.is_email_verified:
            raise AlreadyVerified()

        account.is_email_verified = True
        account.email_verification_token = None
        account.email_verification_expires = None
        saved = await self._save(
            account, InvalidOrExpiredToken("Invalid or expired verification token", status_code=400)
        )
        logger.info("Email verified for account %s", saved.id)
        return saved

    async def resend_verification(self, email: str) -> str:
        _raise_if_invalid(check_email(email))
        account = await run_in_threadpool(self.store.find_by_email, normalize_email(email), True)
        if account is None or account.is_email_verified:
            return RESEND_VERIFICATION_MESSAGE

        token = self._new_verification_token(account)
        account = await self._save(account)
        self._notify(VERIFY_EMAIL, account, token)
        return RESEND_VERIFICATION_MESSAGE

    # ------------------------------------------------------------------
    # External identity
    # ------------------------------------------------------------------

    async def link_external_identity(self, identity: ExternalIdentity) -> AuthResult:
        """Sign in with a verified external identity, linking or creating as needed.

        Resolution order: existing link by external id, then an account with
        the same email (linked and marked verified), then a new identity-only
        account. Two-factor is not re-challenged here.
        """
        if check_email(identity.email):
            raise ExternalIdentityError("External identity did not carry a usable email")
        email = normalize_email(identity.email)

        account = await run_in_threadpool(self.store.find_by_external_id, identity.external_id, True)
        if account is None:
            account = await run_in_threadpool(self.store.find_by_email, email, True)
            if account is not None:
                account.external_id = identity.external_id
                account.is_email_verified = True
                account.email_verification_token = None
                account.email_verification_expires = None
                try:
                    account = await self._save(account)
                except IntegrityError as exc:
                    raise DuplicateAccount() from exc
                logger.info("Linked external identity to account %s", account.id)
            else:
                name = identity.display_name.strip()[:NAME_MAX_LENGTH]
                if len(name) < NAME_MIN_LENGTH:
                    name = email[:NAME_MAX_LENGTH]
                try:
                    account = await run_in_threadpool(
                        self.store.create,
                        Account(name=name, email=email, external_id=identity.external_id, is_email_verified=True),
                    )
                except IntegrityError as exc:
                    raise DuplicateAccount() from exc
                logger.info("Created account %s from external identity", account.id)

        return await self._start_session(account, revoked=ConcurrentUpdate())

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    async def enroll_two_factor(self, account_id: int) -> TwoFactorEnrollment:
        account = await self._load(account_id)
        if account.is_two_factor_enabled:
            raise TwoFactorAlreadyEnabled()

        enrollment = await run_in_threadpool(self.two_factor.enroll, account.email)
        account.two_factor_pending_secret = enrollment.secret
        await self._save(account)
        return enrollment

    async def confirm_two_factor(self, account_id: int, code: str) -> list[str]:
        """Activate the pending secret if code matches. Returns the new backup codes."""
        account = await self._load(account_id)
        if account.is_two_factor_enabled:
            raise TwoFactorAlreadyEnabled()
        if account.two_factor_pending_secret is None:
            raise TwoFactorNotPending()
        if not self.two_factor.verify_code(account.two_factor_pending_secret, code):
            raise InvalidTwoFactorCode()

        backup_codes = self.two_factor.generate_backup_codes()
        account.two_factor_secret = account.two_factor_pending_secret
        account.two_factor_pending_secret = None
        account.is_two_factor_enabled = True
        account.two_factor_backup_codes = backup_codes
        await self._save(account)
        logger.info("Two-factor enabled for account %s", account.id)
        return backup_codes

    async def verify_two_factor_login(
        self,
        challenge_token: str,
        code: str | None = None,
        backup_code: str | None = None,
    ) -> AuthResult:
        """Finish a 2FA login with a TOTP code or one unused backup code.

        The challenge must be the one stored by login(). It is consumed by the
        first successful verification; a wrong code leaves it usable until it
        expires.
        """
        claims = self.issuer.decode(challenge_token, TWO_FACTOR)
        if claims is None:
            raise InvalidOrExpiredToken()
        account = await run_in_threadpool(self.store.find_by_id, claims.account_id, True)
        if (
            account is None
            or account.token_version != claims.token_version
            or not account.is_two_factor_enabled
            or account.two_factor_challenge is None
            or not hmac.compare_digest(account.two_factor_challenge, challenge_token)
        ):
            raise InvalidOrExpiredToken()

        remaining = None
        if not (code and self.two_factor.verify_code(account.two_factor_secret, code)):
            remaining = self.two_factor.consume_backup_code(backup_code, account.two_factor_backup_codes)
            if remaining is None:
                raise InvalidTwoFactorCode()

        if not await run_in_threadpool(self.store.consume_two_factor_challenge, account.id, challenge_token):
            raise InvalidOrExpiredToken()

        if remaining is not None:
            swapped = await run_in_threadpool(
                self.store.swap_backup_codes, account.id, account.two_factor_backup_codes, remaining
            )
            if not swapped:
                raise InvalidTwoFactorCode()
            logger.info("Backup code used for account %s (%d left)", account.id, len(remaining))

        return await self._start_session(account)

    async def disable_two_factor(
        self,
        account_id: int,
        password: str,
        code: str | None = None,
        backup_code: str | None = None,
    ) -> None:
        """Turn two-factor off after password re-entry plus a TOTP or backup code."""
        _raise_if_invalid(check_required(password, "password", "Password"))
        account = await self._load(account_id)
        if not await run_in_threadpool(self.hasher.verify_login, password, account.hashed_password):
            raise InvalidCredentials("Password is incorrect")
        if account.is_two_factor_enabled:
            code_ok = bool(code) and self.two_factor.verify_code(account.two_factor_secret, code)
            if not code_ok and self.two_factor.consume_backup_code(backup_code, account.two_factor_backup_codes) is None:
                raise InvalidTwoFactorCode()

        account.is_two_factor_enabled = False
        account.two_factor_secret = None
        account.two_factor_pending_secret = None
        account.two_factor_backup_codes = []
        account.two_factor_challenge = None
        await self._save(account)
        logger.warning("Two-factor disabled for account %s", account.id)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def update_account(self, account_id: int, update: AccountUpdate) -> Account:
        """Apply a partial profile update. Ownership is checked by the caller.

        Changing the email clears verification and sends a new link to the
        new address.
        """
        errors: list[FieldError] = []
        if update.name is not None:
            errors += check_name(update.name)
        if update.email is not None:
            errors += check_email(update.email)
        if update.is_empty():
            errors.append(FieldError("body", "No fields to update"))
        _raise_if_invalid(errors)

        update = replace(
            update,
            name=update.name.strip() if update.name is not None else None,
            email=normalize_email(update.email) if update.email is not None else None,
        )
        account = await self._load(account_id)
        email_changed = update.changes_email(account)
        account = update.apply(account)

        verification_token = None
        if email_changed:
            account.is_email_verified = False
            verification_token = self._new_verification_token(account)

        try:
            saved = await self._save(account)
        except IntegrityError as exc:
            raise DuplicateAccount() from exc

        if verification_token is not None:
            self._notify(VERIFY_EMAIL, saved, verification_token)
        return saved

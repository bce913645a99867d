"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account is the mapper. Flow and dependency code never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Sensitive columns (password hash, every token and expiry, 2FA secrets,
  backup codes, external id) are blanked by the mapper unless the caller
  passes with_secrets=True. Reads that only need the public profile cannot
  leak them by accident.

  UNIQUE(external_id) gives sparse uniqueness for free: SQLite and Postgres
  both treat NULLs as distinct in UNIQUE constraints, so any number of
  password-only accounts can coexist while each external id maps to at most
  one account.

Concurrency:
  Every write bumps row_version. save() writes the whole record in one
  UPDATE guarded by the row_version the caller loaded, so a revocation
  transition (new hash + token_version bump + refresh clear) commits as a
  unit and a writer holding a stale copy gets StaleAccountError instead of
  silently restoring consumed tokens or an old password hash.

  Session bookkeeping that runs on every login (refresh session, 2FA
  challenge, backup codes) goes through column-scoped compare-and-set
  updates instead, so it never writes any other column.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Engine

from auth.models import Account, Role

_DEFAULT_DB_URL = "sqlite:///accountgate.db"


class StaleAccountError(Exception):
    """The record changed between the caller's read and its save."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for identity-only accounts
    Column("external_id", String(255), unique=True),  # sparse: NULLs are distinct
    Column("role", String(20), nullable=False, server_default="user"),
    Column("is_email_verified", Boolean, nullable=False, server_default="0"),
    Column("email_verification_token", String(64), index=True),
    Column("email_verification_expires", String(32)),
    Column("reset_password_token", String(64), index=True),
    Column("reset_password_expires", String(32)),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("refresh_token", Text),
    Column("refresh_token_expires", String(32)),
    Column("is_two_factor_enabled", Boolean, nullable=False, server_default="0"),
    Column("two_factor_secret", String(64)),
    Column("two_factor_pending_secret", String(64)),
    Column("two_factor_backup_codes", Text),  # JSON list
    Column("two_factor_challenge", Text),  # live 2FA challenge token, single use
    Column("row_version", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_SENSITIVE_FIELDS = (
    "hashed_password",
    "external_id",
    "email_verification_token",
    "email_verification_expires",
    "reset_password_token",
    "reset_password_expires",
    "refresh_token",
    "refresh_token_expires",
    "two_factor_secret",
    "two_factor_pending_secret",
    "two_factor_challenge",
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account records.

    Usage:
        store = AccountStore()
        account = store.create(Account(name="Ana", email="ana@x.com", hashed_password=...))
        account = store.find_by_email("ana@x.com", with_secrets=True)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _find_one(self, where, with_secrets: bool) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_accounts).where(where)).fetchone()
        return _row_to_account(row, with_secrets) if row is not None else None

    def find_by_id(self, account_id: int, with_secrets: bool = False) -> Account | None:
        return self._find_one(_accounts.c.id == account_id, with_secrets)

    def find_by_email(self, email: str, with_secrets: bool = False) -> Account | None:
        """Look up by email. Callers pass the already-normalized (lowercased) form."""
        return self._find_one(_accounts.c.email == email, with_secrets)

    def find_by_external_id(self, external_id: str, with_secrets: bool = False) -> Account | None:
        return self._find_one(_accounts.c.external_id == external_id, with_secrets)

    def find_by_verification_token(self, token: str, with_secrets: bool = False) -> Account | None:
        """Exact token match whose expiry is still in the future.

        ISO 8601 UTC strings with a fixed offset sort chronologically, so the
        expiry comparison can run in SQL.
        """
        return self._find_one(
            (_accounts.c.email_verification_token == token) & (_accounts.c.email_verification_expires > now_iso()),
            with_secrets,
        )

    def find_by_reset_token(self, token: str, with_secrets: bool = False) -> Account | None:
        """Exact token match whose expiry is still in the future."""
        return self._find_one(
            (_accounts.c.reset_password_token == token) & (_accounts.c.reset_password_expires > now_iso()),
            with_secrets,
        )

    def list_accounts(self) -> list[Account]:
        """Return every account, newest first, without sensitive fields."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(_accounts).order_by(_accounts.c.created_at.desc(), _accounts.c.id.desc())).fetchall()
        return [_row_to_account(r, with_secrets=False) for r in rows]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, account: Account) -> Account:
        """Insert a new account and return it with id and timestamps assigned.

        Raises sqlalchemy.exc.IntegrityError if the email or external id is
        already taken. Callers treat that as DuplicateAccount -- it is the
        signal that a concurrent request created the record first.
        """
        stamp = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.insert().values(**_account_values(account), created_at=stamp, updated_at=stamp))
            account_id = result.inserted_primary_key[0]
        created = self.find_by_id(account_id, with_secrets=True)
        assert created is not None  # just inserted in a committed transaction
        return created

    def save(self, account: Account) -> Account:
        """Write every mutable field of account in one transaction.

        account must have been loaded with with_secrets=True; a redacted copy
        would write its blanked secrets back over the real ones. The UPDATE
        only matches while the stored row_version equals account.row_version.

        Returns the stored record (with secrets). Raises IntegrityError on a
        unique-constraint collision (email or external id changed to a taken
        value), StaleAccountError if another write landed since account was
        read, and LookupError if the account no longer exists.
        """
        if account.id is None:
            raise LookupError("cannot save an account that was never created")
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account.id) & (_accounts.c.row_version == account.row_version))
                .values(**_account_values(account), row_version=_accounts.c.row_version + 1, updated_at=now_iso())
            )
            if result.rowcount == 0:
                exists = conn.execute(select(_accounts.c.id).where(_accounts.c.id == account.id)).fetchone()
                if exists is None:
                    raise LookupError(f"account {account.id} not found")
                raise StaleAccountError(f"account {account.id} changed since it was read")
        saved = self.find_by_id(account.id, with_secrets=True)
        assert saved is not None
        return saved

    def _compare_and_set(self, account_id: int, guard, **values) -> bool:
        """UPDATE only the given columns where guard still holds. True if a row changed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & guard)
                .values(**values, row_version=_accounts.c.row_version + 1, updated_at=now_iso())
            )
        return result.rowcount == 1

    def set_refresh_session(self, account_id: int, token: str, expires: str, token_version: int) -> Account | None:
        """Store the live refresh session if token_version is still current.

        Returns the stored record, or None when a revocation (or delete) won
        the race and the new session must not be handed out.
        """
        stored = self._compare_and_set(
            account_id,
            _accounts.c.token_version == token_version,
            refresh_token=token,
            refresh_token_expires=expires,
        )
        return self.find_by_id(account_id, with_secrets=True) if stored else None

    def clear_refresh_session(self, account_id: int, token: str) -> bool:
        """End the refresh session only if token is still the stored one."""
        return self._compare_and_set(
            account_id,
            _accounts.c.refresh_token == token,
            refresh_token=None,
            refresh_token_expires=None,
        )

    def set_two_factor_challenge(self, account_id: int, token: str, token_version: int) -> bool:
        """Record the one live 2FA challenge; a newer login replaces an older one."""
        return self._compare_and_set(
            account_id,
            _accounts.c.token_version == token_version,
            two_factor_challenge=token,
        )

    def consume_two_factor_challenge(self, account_id: int, token: str) -> bool:
        """Clear the stored challenge if it is token. Only one caller can win."""
        return self._compare_and_set(
            account_id,
            _accounts.c.two_factor_challenge == token,
            two_factor_challenge=None,
        )

    def swap_backup_codes(self, account_id: int, expected: list[str], remaining: list[str]) -> bool:
        """Compare-and-set the backup code list.

        Succeeds only if the stored list still equals expected, so two
        concurrent requests presenting the same backup code cannot both
        consume it. Returns True when this caller won.
        """
        return self._compare_and_set(
            account_id,
            _accounts.c.two_factor_backup_codes == json.dumps(expected),
            two_factor_backup_codes=json.dumps(remaining),
        )

    def delete(self, account_id: int) -> bool:
        """Permanently delete an account. Returns True if a row was removed.

        Administrative operation only -- no flow in auth/flows.py calls it.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_accounts.delete().where(_accounts.c.id == account_id))
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _account_values(account: Account) -> dict:
    return {
        "name": account.name,
        "email": account.email,
        "hashed_password": account.hashed_password,
        "external_id": account.external_id,
        "role": account.role.value,
        "is_email_verified": account.is_email_verified,
        "email_verification_token": account.email_verification_token,
        "email_verification_expires": account.email_verification_expires,
        "reset_password_token": account.reset_password_token,
        "reset_password_expires": account.reset_password_expires,
        "token_version": account.token_version,
        "refresh_token": account.refresh_token,
        "refresh_token_expires": account.refresh_token_expires,
        "is_two_factor_enabled": account.is_two_factor_enabled,
        "two_factor_secret": account.two_factor_secret,
        "two_factor_pending_secret": account.two_factor_pending_secret,
        "two_factor_backup_codes": json.dumps(account.two_factor_backup_codes),
        "two_factor_challenge": account.two_factor_challenge,
    }


def _row_to_account(row, with_secrets: bool) -> Account:
    account = Account(
        id=row.id,
        name=row.name,
        email=row.email,
        role=Role(row.role),
        hashed_password=row.hashed_password,
        external_id=row.external_id,
        is_email_verified=bool(row.is_email_verified),
        email_verification_token=row.email_verification_token,
        email_verification_expires=row.email_verification_expires,
        reset_password_token=row.reset_password_token,
        reset_password_expires=row.reset_password_expires,
        token_version=row.token_version,
        refresh_token=row.refresh_token,
        refresh_token_expires=row.refresh_token_expires,
        is_two_factor_enabled=bool(row.is_two_factor_enabled),
        two_factor_secret=row.two_factor_secret,
        two_factor_pending_secret=row.two_factor_pending_secret,
        two_factor_backup_codes=json.loads(row.two_factor_backup_codes or "[]"),
        two_factor_challenge=row.two_factor_challenge,
        row_version=row.row_version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
    if not with_secrets:
        for name in _SENSITIVE_FIELDS:
            setattr(account, name, None)
        account.two_factor_backup_codes = []
    return account

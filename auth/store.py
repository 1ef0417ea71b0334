"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper + Unit of Work.
CredentialStore owns the engine. Every logical operation opens one
transaction with `store.transaction()` and performs its reads and writes
through the StoreTransaction it yields; the _row_to_* functions are the
mappers. Route and resolver code never touches SQL directly.

    with store.transaction(write=True) as tx:
        user = tx.get_user_by_email("a@example.com", with_accounts=True)
        tx.update_user(user.id, name="New name")

The block commits on exit and rolls back if it raises, including when a
request is abandoned mid-flight. Nothing done inside is visible to other
connections until commit, so multi-step writes like "delete prior reset
tokens, then insert the new one" are never observed half-applied.

SQLite specifics:
  pysqlite defers BEGIN until the first write, which would leave the reads
  at the top of a block outside the transaction. The connect/begin listeners
  below switch the driver to autocommit and emit BEGIN ourselves, the recipe
  from the SQLAlchemy pysqlite docs. WAL mode and foreign keys are enabled per
  connection because PRAGMAs are not inherited from the pool.

  A deferred BEGIN in WAL mode cannot be upgraded to a writer once another
  connection has committed since its snapshot; SQLite answers "database is
  locked" at once instead of waiting. Blocks that write therefore open with
  `store.transaction(write=True)`, which emits BEGIN IMMEDIATE: the write lock
  is taken up front, a second writer waits up to the busy timeout, and then
  reads the committed state (so a racing signup sees the existing email and a
  racing token consumer finds the token gone).

Errors:
  IntegrityError propagates unchanged so callers can map constraint hits to
  domain conflicts. Any other SQLAlchemyError raised inside a transaction
  becomes auth.errors.StoreUnavailable.

Security:
  All queries use bound parameters. No f-strings in SQL.
  UNIQUE(provider, provider_account_id) is a real SQL constraint -- both
  columns are NOT NULL, so SQLite's NULL-distinct rule cannot bypass it.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import StoreUnavailable
from auth.models import LinkedAccount, PasswordResetToken, Role, User, VerificationToken, normalize_email

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # lower-cased
    Column("name", String(255), nullable=False),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("role", String(10), nullable=False, server_default="READER"),
    Column("avatar_url", Text),
    Column("bio", Text),
    Column("email_verified", String(32)),  # NULL = unverified
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("type", String(20), nullable=False, server_default="oauth"),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("access_token", Text),
    Column("refresh_token", Text),
    Column("id_token", Text),
    Column("expires_at", Integer),
    Column("token_type", String(40)),
    Column("scope", Text),
    UniqueConstraint("provider", "provider_account_id", name="uq_accounts_provider_account"),
)

_verification_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("identifier", String(64), nullable=False),  # owning user id
    Column("token", String(128), nullable=False, unique=True),
    Column("expires", String(32), nullable=False),
    PrimaryKeyConstraint("identifier", "token", name="pk_verification_tokens"),
)

_password_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("expires", String(32), nullable=False),
)

# Columns update_user() may touch. Anything else is a programming error.
_MUTABLE_USER_FIELDS = {"name", "hashed_password", "role", "avatar_url", "bio", "email_verified"}

_TOKEN_FIELDS = ("access_token", "refresh_token", "id_token", "expires_at", "token_type", "scope")

# Execution option read by _on_sqlite_begin; "IMMEDIATE" for write transactions.
_BEGIN_MODE_OPTION = "evblog_begin_mode"

# Seconds a writer waits for the SQLite write lock before giving up.
_SQLITE_BUSY_TIMEOUT = 15


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _on_sqlite_connect(dbapi_conn, connection_record) -> None:
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_sqlite_begin(conn: Connection) -> None:
    mode = conn.get_execution_options().get(_BEGIN_MODE_OPTION)
    conn.exec_driver_sql(f"BEGIN {mode}" if mode else "BEGIN")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


class StoreTransaction:
    """Query methods bound to one open transaction. Obtain via CredentialStore.transaction()."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as a lost race with a concurrent signup.
        """
        now = _to_iso(_now())
        result = self._conn.execute(
            _users.insert().values(
                email=normalize_email(user.email),
                name=user.name,
                hashed_password=user.hashed_password,
                role=Role(user.role).value,
                avatar_url=user.avatar_url,
                bio=user.bio,
                email_verified=_to_iso(user.email_verified),
                created_at=now,
                updated_at=now,
            )
        )
        return result.inserted_primary_key[0]

    def get_user_by_id(self, user_id: int, *, with_accounts: bool = False) -> User | None:
        row = self._conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return self._load_user(row, with_accounts)

    def get_user_by_email(self, email: str, *, with_accounts: bool = False) -> User | None:
        """Look up a user by email. The argument is normalized first."""
        row = self._conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return self._load_user(row, with_accounts)

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable user fields. Returns False if user_id was not found.

        Accepted fields: name, hashed_password, role, avatar_url, bio,
        email_verified. Unknown keys raise ValueError.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        if "email_verified" in fields:
            fields["email_verified"] = _to_iso(fields["email_verified"])
        fields["updated_at"] = _to_iso(_now())
        result = self._conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def list_users(self) -> list[User]:
        """Return all users, newest first."""
        rows = self._conn.execute(_users.select().order_by(_users.c.created_at.desc(), _users.c.id.desc())).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_by_role(self) -> dict[Role, int]:
        counts = {role: 0 for role in Role}
        rows = self._conn.execute(select(_users.c.role, func.count()).group_by(_users.c.role)).fetchall()
        for role, count in rows:
            counts[Role(role)] = count
        return counts

    def _load_user(self, row, with_accounts: bool) -> User | None:
        if row is None:
            return None
        user = _row_to_user(row)
        if with_accounts:
            user.accounts = self.list_accounts(user.id)
        return user

    # ------------------------------------------------------------------
    # Linked accounts
    # ------------------------------------------------------------------

    def list_accounts(self, user_id: int) -> list[LinkedAccount]:
        rows = self._conn.execute(
            _accounts.select().where(_accounts.c.user_id == user_id).order_by(_accounts.c.id)
        ).fetchall()
        return [_row_to_account(r) for r in rows]

    def get_account(self, provider: str, provider_account_id: str) -> LinkedAccount | None:
        row = self._conn.execute(
            _accounts.select().where(
                (_accounts.c.provider == provider) & (_accounts.c.provider_account_id == provider_account_id)
            )
        ).fetchone()
        return _row_to_account(row) if row is not None else None

    def create_account(self, account: LinkedAccount) -> int:
        """Insert a linked account. IntegrityError if (provider, id) is already claimed."""
        result = self._conn.execute(
            _accounts.insert().values(
                user_id=account.user_id,
                type=account.type,
                provider=account.provider,
                provider_account_id=account.provider_account_id,
                **{name: getattr(account, name) for name in _TOKEN_FIELDS},
            )
        )
        return result.inserted_primary_key[0]

    def update_account_tokens(self, account_id: int, tokens: dict) -> None:
        """Overwrite the opaque provider tokens. Keys outside the token columns are ignored."""
        values = {name: tokens[name] for name in _TOKEN_FIELDS if name in tokens}
        if values:
            self._conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def create_verification_token(self, token: VerificationToken) -> None:
        self._conn.execute(
            _verification_tokens.insert().values(
                identifier=token.identifier,
                token=token.token,
                expires=_to_iso(token.expires),
            )
        )

    def get_verification_token(self, token: str) -> VerificationToken | None:
        row = self._conn.execute(_verification_tokens.select().where(_verification_tokens.c.token == token)).fetchone()
        if row is None:
            return None
        return VerificationToken(identifier=row.identifier, token=row.token, expires=_from_iso(row.expires))

    def delete_verification_token(self, identifier: str, token: str) -> bool:
        """Delete by the (identifier, token) key. True only for the caller that removed the row."""
        result = self._conn.execute(
            _verification_tokens.delete().where(
                (_verification_tokens.c.identifier == identifier) & (_verification_tokens.c.token == token)
            )
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def replace_reset_token(self, token: PasswordResetToken) -> int:
        """Delete every reset token the user holds, then insert `token`.

        Both statements run in the caller's transaction, so at most one active
        reset flow per user is ever visible.
        """
        self._conn.execute(_password_reset_tokens.delete().where(_password_reset_tokens.c.user_id == token.user_id))
        result = self._conn.execute(
            _password_reset_tokens.insert().values(
                token=token.token,
                user_id=token.user_id,
                expires=_to_iso(token.expires),
            )
        )
        return result.inserted_primary_key[0]

    def get_reset_token(self, token: str) -> PasswordResetToken | None:
        row = self._conn.execute(
            _password_reset_tokens.select().where(_password_reset_tokens.c.token == token)
        ).fetchone()
        if row is None:
            return None
        return PasswordResetToken(id=row.id, token=row.token, user_id=row.user_id, expires=_from_iso(row.expires))

    def delete_reset_token(self, token: str) -> bool:
        result = self._conn.execute(_password_reset_tokens.delete().where(_password_reset_tokens.c.token == token))
        return result.rowcount == 1

    def list_reset_tokens(self, user_id: int) -> list[PasswordResetToken]:
        rows = self._conn.execute(
            _password_reset_tokens.select().where(_password_reset_tokens.c.user_id == user_id)
        ).fetchall()
        return [
            PasswordResetToken(id=r.id, token=r.token, user_id=r.user_id, expires=_from_iso(r.expires)) for r in rows
        ]

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def table_counts(self) -> dict[str, int]:
        """Row count per auth table, for the check-db CLI command."""
        return {
            table.name: self._conn.execute(select(func.count()).select_from(table)).scalar() or 0
            for table in (_users, _accounts, _verification_tokens, _password_reset_tokens)
        }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, linked accounts, and verification/reset tokens.

    Usage:
        store = CredentialStore("sqlite:///evblog_auth.db")
        with store.transaction(write=True) as tx:
            uid = tx.create_user(User(email="a@example.com", name="Ada"))
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = _SQLITE_BUSY_TIMEOUT
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if is_sqlite:
            event.listen(self.engine, "connect", _on_sqlite_connect)
            event.listen(self.engine, "begin", _on_sqlite_begin)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self, *, write: bool = False) -> Iterator[StoreTransaction]:
        """Yield a StoreTransaction; commit on normal exit, roll back on error.

        Pass write=True for any block that writes. On SQLite it starts with
        BEGIN IMMEDIATE so concurrent writers queue instead of failing.
        """
        try:
            with self.engine.connect() as conn:
                if write:
                    conn.execution_options(**{_BEGIN_MODE_OPTION: "IMMEDIATE"})
                with conn.begin():
                    yield StoreTransaction(conn)
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"credential store failed: {exc}") from exc

    # Single-statement conveniences for callers outside a unit of work.

    def get_user_by_id(self, user_id: int, *, with_accounts: bool = False) -> User | None:
        with self.transaction() as tx:
            return tx.get_user_by_id(user_id, with_accounts=with_accounts)

    def get_user_by_email(self, email: str, *, with_accounts: bool = False) -> User | None:
        with self.transaction() as tx:
            return tx.get_user_by_email(email, with_accounts=with_accounts)

    def list_users(self) -> list[User]:
        with self.transaction() as tx:
            return tx.list_users()

    def count_by_role(self) -> dict[Role, int]:
        with self.transaction() as tx:
            return tx.count_by_role()

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        avatar_url=row.avatar_url,
        bio=row.bio,
        email_verified=_from_iso(row.email_verified),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_account(row) -> LinkedAccount:
    return LinkedAccount(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        id_token=row.id_token,
        expires_at=row.expires_at,
        token_type=row.token_type,
        scope=row.scope,
    )

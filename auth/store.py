"""
auth/store.py -- SQLAlchemy Core persistence layer for users and 2FA state.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_recovery_code are the mappers. Route and service code
never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity:
  Every 2FA transition is a conditional UPDATE keyed on the state the caller
  observed (e.g. "WHERE two_factor_enabled = 0 AND totp_pending_secret = :s").
  rowcount tells the caller whether it won; a concurrent transition that got
  there first leaves rowcount at 0 and nothing is written. Multi-statement
  transitions (enable + store recovery batch) run inside engine.begin() with
  the conditional UPDATE as the first statement, so SQLite takes the write
  lock before anything else is read.

  Recovery-code consumption is a single "UPDATE ... WHERE used = 0". Two
  requests racing the same code cannot both see rowcount 1.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import RecoveryCode, User

_DEFAULT_DB_URL = "sqlite:///pyroalert_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="viewer"),
    Column("name", String(255)),
    # SQLite treats NULLs as distinct in UNIQUE constraints, which is exactly
    # the sparse-unique behaviour wanted for an optional document number.
    Column("id_number", String(14), unique=True),
    Column("id_type", String(4)),  # "CPF" | "CNPJ"
    Column("phone", String(32)),
    Column("totp_secret", String(64)),
    Column("totp_pending_secret", String(64)),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_recovery_codes = Table(
    "recovery_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("code_hash", String(64), nullable=False),  # SHA-256 hex
    Column("used", Integer, nullable=False, server_default="0"),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Index("ix_recovery_codes_user_hash", "user_id", "code_hash"),
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


def build_engine(db_url: str) -> Engine:
    """Create an Engine with the SQLite connection settings both stores need."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    # Fixed microsecond precision keeps lexical order equal to time order.
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and RecoveryCode entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="admin@example.com", role="admin", hashed_password=...))
        user = store.get_by_email("admin@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = build_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or id_number already
        exists. auth.credentials.register_user() turns that into Conflict.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    name=user.name,
                    id_number=user.id_number,
                    id_type=user.id_type,
                    phone=user.phone,
                    created_at=now,
                    updated_at=now,
                    is_active=1 if user.is_active else 0,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by login key. The key is normalized before lookup."""
        key = email.strip().lower()
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == key)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by email. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields on an existing user.

        Accepted fields: role, is_active, name, phone, hashed_password, email.
        2FA columns are deliberately not accepted here -- they change only
        through the conditional transition methods below.

        Returns True if a row was updated, False if user_id was not found.
        Raises IntegrityError when a new email collides with another user.
        """
        allowed = {"role", "is_active", "name", "phone", "hashed_password", "email"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        fields["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_password(self, user_id: int, hashed_password: str) -> bool:
        return self.update_user(user_id, hashed_password=hashed_password)

    def update_email(self, user_id: int, email: str) -> bool:
        return self.update_user(user_id, email=email)

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == "admin") & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user and its recovery codes.

        Refresh tokens live in RefreshTokenStore; callers revoke them first
        (see api/routes/v1/auth.py delete_user).
        """
        with self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.execute(_recovery_codes.delete().where(_recovery_codes.c.user_id == user_id))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login after a successful grant."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Two-factor transitions (conditional updates)
    # ------------------------------------------------------------------

    def set_pending_secret(self, user_id: int, secret: str) -> bool:
        """DISABLED/PENDING_SETUP -> PENDING_SETUP with a fresh pending secret.

        Returns False if the user does not exist or 2FA is already enabled.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.two_factor_enabled == 0))
                .values(totp_pending_secret=secret, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def activate_two_factor(self, user_id: int, pending_secret: str, code_hashes: list[str]) -> bool:
        """PENDING_SETUP -> ENABLED: promote the pending secret and store a recovery batch.

        The UPDATE only matches while the pending secret is still the one the
        caller verified the code against. A concurrent setup restart or a
        second confirm loses the race and nothing is written.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id)
                    & (_users.c.two_factor_enabled == 0)
                    & (_users.c.totp_pending_secret == pending_secret)
                )
                .values(
                    two_factor_enabled=1,
                    totp_secret=pending_secret,
                    totp_pending_secret=None,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                return False
            _write_recovery_batch(conn, user_id, code_hashes, now)
        return True

    def disable_two_factor(self, user_id: int) -> bool:
        """ENABLED -> DISABLED: clear both secret slots and the whole recovery batch."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.two_factor_enabled == 1))
                .values(
                    two_factor_enabled=0,
                    totp_secret=None,
                    totp_pending_secret=None,
                    updated_at=_now_iso(),
                )
            )
            if result.rowcount == 0:
                return False
            conn.execute(_recovery_codes.delete().where(_recovery_codes.c.user_id == user_id))
        return True

    def replace_recovery_codes(self, user_id: int, code_hashes: list[str]) -> bool:
        """Swap the recovery batch for a new one. Only legal while 2FA is enabled.

        The old batch is deleted and the new one inserted in the same
        transaction, so no request can see a mix of both.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.two_factor_enabled == 1))
                .values(updated_at=now)
            )
            if result.rowcount == 0:
                return False
            _write_recovery_batch(conn, user_id, code_hashes, now)
        return True

    def consume_recovery_code(self, user_id: int, code_hash: str) -> bool:
        """Mark one unused recovery code as used. True only for the single winner."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _recovery_codes.update()
                .where(
                    (_recovery_codes.c.user_id == user_id)
                    & (_recovery_codes.c.code_hash == code_hash)
                    & (_recovery_codes.c.used == 0)
                )
                .values(used=1, used_at=_now_iso())
            )
        return result.rowcount == 1

    def count_unused_recovery_codes(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_recovery_codes)
                .where((_recovery_codes.c.user_id == user_id) & (_recovery_codes.c.used == 0))
            ).scalar()
        return result or 0

    def get_recovery_codes(self, user_id: int) -> list[RecoveryCode]:
        """Return the user's current batch in generation order."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _recovery_codes.select().where(_recovery_codes.c.user_id == user_id).order_by(_recovery_codes.c.id)
            ).fetchall()
        return [_row_to_recovery_code(r) for r in rows]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


def _write_recovery_batch(conn, user_id: int, code_hashes: list[str], now: str) -> None:
    conn.execute(_recovery_codes.delete().where(_recovery_codes.c.user_id == user_id))
    if code_hashes:
        conn.execute(
            _recovery_codes.insert(),
            [{"user_id": user_id, "code_hash": h, "used": 0, "created_at": now} for h in code_hashes],
        )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        name=row.name,
        id_number=row.id_number,
        id_type=row.id_type,
        phone=row.phone,
        totp_secret=row.totp_secret,
        totp_pending_secret=row.totp_pending_secret,
        two_factor_enabled=bool(row.two_factor_enabled),
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
    )


def _row_to_recovery_code(row) -> RecoveryCode:
    return RecoveryCode(
        id=row.id,
        user_id=row.user_id,
        code_hash=row.code_hash,
        used=bool(row.used),
        used_at=row.used_at,
        created_at=row.created_at,
    )

"""
auth/refresh.py -- Refresh token persistence, rotation, and revocation.

Pattern: Repository (same shape as auth/store.py). RefreshTokenStore owns the
refresh_tokens table exclusively and references users by user_id only.

Lifecycle:
  issue()   -- new random token, stored as SHA-256, plaintext returned once.
  verify()  -- matching + not revoked + not expired. Expiry is checked
               independently of the revoked flag.
  rotate()  -- revoke the presented token and insert its successor in one
               transaction. The revoke is a conditional UPDATE
               ("... WHERE revoked = 0 AND expires_at > :now"), so when two
               requests present the same token only one sees rowcount 1 and
               issues a successor; the other fails.
  revoke() / revoke_all() / revoke_family() -- idempotent; unknown tokens are
               not an error so callers cannot probe for existence.

Replay detection:
  Every token descended from one password grant shares a family_id. Presenting
  a token that is already revoked means either a client bug or a stolen token
  being replayed after the legitimate client rotated it. We log it on the
  pyroalert.auth.refresh logger and, when revoke_family_on_replay is set,
  revoke the whole family so neither party keeps a live session.

Physical cleanup: purge_expired() deletes rows past expires_at. It is
housekeeping only -- verify() already rejects expired rows.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.errors import RefreshTokenInvalid
from auth.models import RefreshToken
from auth.store import UserStore, build_engine
from auth.tokens import generate_opaque_token, hash_opaque_token

logger = logging.getLogger("pyroalert.auth.refresh")

_DEFAULT_DB_URL = "sqlite:///pyroalert_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("user_id", Integer, nullable=False, index=True),
    Column("family_id", String(36), nullable=False, index=True),
    Column("parent_id", Integer),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("client_id", String(64), nullable=False, server_default="default"),
    Column("scope", Text, nullable=False, server_default=""),  # space-joined
    Column("user_agent", Text),
    Column("ip_address", String(45)),
    Column("created_at", String(32), nullable=False),
    Index("ix_refresh_tokens_expires_at", "expires_at"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    # Same fixed-precision format as auth/store.py so string comparison is time order.
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Repository for RefreshToken rows.

    Usage:
        tokens = RefreshTokenStore(ttl_days=30, user_store=users)
        raw, expires_at = tokens.issue(user.id, ["read", "write"], {"user_agent": "curl"})
        new_raw, _, record = tokens.rotate(raw)
        tokens.close()
    """

    def __init__(
        self,
        db_url: str = _DEFAULT_DB_URL,
        ttl_days: int = 30,
        revoke_family_on_replay: bool = False,
        user_store: Optional[UserStore] = None,
    ) -> None:
        self.engine: Engine = build_engine(db_url)
        _metadata.create_all(self.engine)
        self.ttl = timedelta(days=ttl_days)
        self.revoke_family_on_replay = revoke_family_on_replay
        self._user_store = user_store

    # ------------------------------------------------------------------
    # Issue / verify
    # ------------------------------------------------------------------

    def issue(
        self,
        user_id: int,
        scope: Iterable[str],
        metadata: Optional[dict] = None,
        ttl: Optional[timedelta] = None,
    ) -> tuple[str, datetime]:
        """Create a token starting a new rotation family. Returns (plaintext, expires_at)."""
        with self.engine.begin() as conn:
            return self._insert(conn, user_id, list(scope), metadata or {}, str(uuid.uuid4()), None, ttl)

    def verify(self, raw_token: str, detect_replay: bool = True) -> RefreshToken:
        """Return the live record for raw_token or raise RefreshTokenInvalid.

        A hit on a revoked row is reported as replay before raising, unless
        detect_replay is False (introspection only looks, it does not present).
        """
        record = self._get_by_hash(hash_opaque_token(raw_token))
        if record is None:
            raise RefreshTokenInvalid("unknown")
        if record.revoked:
            if detect_replay:
                self._handle_replay(record)
            raise RefreshTokenInvalid("revoked")
        if record.expires_at <= _now_iso():
            raise RefreshTokenInvalid("expired")
        if self._user_store is not None:
            record.user = self._user_store.get_by_id(record.user_id)
            if record.user is None or not record.user.is_active:
                raise RefreshTokenInvalid("unknown")
        return record

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(
        self,
        raw_token: str,
        scope: Optional[Iterable[str]] = None,
        metadata: Optional[dict] = None,
    ) -> tuple[str, datetime, RefreshToken]:
        """Atomically revoke raw_token and issue its successor in the same family.

        scope defaults to the predecessor's scope. Returns
        (new_plaintext, new_expires_at, predecessor_record).

        Raises RefreshTokenInvalid if the token is unknown, expired, or was
        already revoked -- including by a concurrent rotate() that won the race.
        """
        token_hash = hash_opaque_token(raw_token)
        now = _now_iso()
        with self.engine.begin() as conn:
            # The conditional UPDATE is the first statement: it takes SQLite's
            # write lock before the row is read, so the read below cannot be stale.
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > now)
                )
                .values(revoked=1, revoked_at=now)
            )
            if result.rowcount == 1:
                row = conn.execute(
                    _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
                ).fetchone()
                predecessor = _row_to_refresh_token(row)
                new_scope = list(scope) if scope else predecessor.scope
                raw, expires_at = self._insert(
                    conn,
                    predecessor.user_id,
                    new_scope,
                    metadata or {},
                    predecessor.family_id,
                    predecessor.id,
                    None,
                )
                return raw, expires_at, predecessor

        # Lost: find out why, for logging and replay handling only.
        record = self._get_by_hash(token_hash)
        if record is None:
            raise RefreshTokenInvalid("unknown")
        if record.revoked:
            self._handle_replay(record)
            raise RefreshTokenInvalid("revoked")
        raise RefreshTokenInvalid("expired")

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, raw_token: str) -> bool:
        """Revoke a single token. Returns True if a live row changed; never raises for unknown tokens."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == hash_opaque_token(raw_token)) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=_now_iso())
            )
        return result.rowcount > 0

    def revoke_all(self, user_id: int) -> int:
        """Revoke every live token of a user (logout everywhere). Returns the count."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=_now_iso())
            )
        return result.rowcount

    def revoke_family(self, family_id: str) -> int:
        """Revoke every live token in a rotation chain. Returns the count."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.family_id == family_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=_now_iso())
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Queries and housekeeping
    # ------------------------------------------------------------------

    def list_active(self, user_id: int) -> list[RefreshToken]:
        """Return a user's live (unrevoked, unexpired) tokens, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > _now_iso())
                )
                .order_by(_refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def get_family(self, family_id: str) -> list[RefreshToken]:
        """Return every token in a rotation chain in issue order."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.family_id == family_id).order_by(_refresh_tokens.c.id)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def purge_expired(self) -> int:
        """Delete rows past expires_at. Returns the number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= _now_iso()))
        return result.rowcount

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_refresh_tokens)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _insert(
        self,
        conn,
        user_id: int,
        scope: list[str],
        metadata: dict,
        family_id: str,
        parent_id: Optional[int],
        ttl: Optional[timedelta],
    ) -> tuple[str, datetime]:
        raw = generate_opaque_token()
        now = datetime.now(timezone.utc)
        expires_at = now + (ttl if ttl is not None else self.ttl)
        conn.execute(
            _refresh_tokens.insert().values(
                token_hash=hash_opaque_token(raw),
                user_id=user_id,
                family_id=family_id,
                parent_id=parent_id,
                expires_at=_iso(expires_at),
                revoked=0,
                client_id=metadata.get("client_id") or "default",
                scope=" ".join(scope),
                user_agent=metadata.get("user_agent"),
                ip_address=metadata.get("ip_address"),
                created_at=_iso(now),
            )
        )
        return raw, expires_at

    def _get_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def _handle_replay(self, record: RefreshToken) -> None:
        revoked = self.revoke_family(record.family_id) if self.revoke_family_on_replay else 0
        logger.warning(
            "refresh token replay detected (user_id=%s family_id=%s token_id=%s family_revoked=%d)",
            record.user_id,
            record.family_id,
            record.id,
            revoked,
        )


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        family_id=row.family_id,
        parent_id=row.parent_id,
        expires_at=row.expires_at,
        revoked=bool(row.revoked),
        revoked_at=row.revoked_at,
        client_id=row.client_id,
        scope=row.scope.split() if row.scope else [],
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        created_at=row.created_at,
    )

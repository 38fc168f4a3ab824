"""
auth/store.py -- SQLAlchemy Core persistence for session records.

Pattern: Repository + Data Mapper. SessionStore is the repository;
_row_to_record is the mapper. SessionTokenManager never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only SHA-256 digests of tokens are stored (see auth/models.SessionRecord).

Timestamps are stored as fixed-width UTC ISO 8601 strings so that string
comparison in SQL orders the same way as the datetimes do.

A record is "expired" once both of its token expiries are in the past; the
refresh token normally outlives the access token, so a record whose access
token lapsed is still needed for rotation.

DB path: auth/konabra_sessions.db unless a db_url is passed.

Layer rule: no imports from api/, secure/, or cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Index, MetaData, String, Table, and_, create_engine, event, func, or_, select
from sqlalchemy.engine import Engine

from auth.models import ACCESS, REFRESH, SessionRecord

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'konabra_sessions.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_session_tokens = Table(
    "session_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("subject", String(255), nullable=False),
    Column("token_type", String(20), nullable=False, server_default="Bearer"),
    Column("issued_at", String(32), nullable=False),
    Column("access_token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("access_token_expires_at", String(32), nullable=False),
    Column("refresh_token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("refresh_token_expires_at", String(32), nullable=False),
    Index("ix_session_tokens_subject", "subject"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so verification reads do not block on issuance writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _expired_clause(now_iso: str):
    return and_(
        _session_tokens.c.access_token_expires_at < now_iso,
        _session_tokens.c.refresh_token_expires_at < now_iso,
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for SessionRecord rows.

    Every method opens its own connection and commits before returning, so a
    single instance can be shared by concurrent request handlers.

    Usage:
        store = SessionStore()                                   # SQLite default
        store = SessionStore("postgresql://user:pw@host/db")     # PostgreSQL
        store.create(record)
        store.find_active("user-1", token_hash, "access", now)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def create(self, record: SessionRecord) -> None:
        """Insert a new record. Raises sqlalchemy.exc.SQLAlchemyError on failure."""
        with self.engine.connect() as conn:
            conn.execute(
                _session_tokens.insert().values(
                    id=record.id,
                    subject=record.subject,
                    token_type=record.token_type,
                    issued_at=_to_iso(record.issued_at),
                    access_token_hash=record.access_token_hash,
                    access_token_expires_at=_to_iso(record.access_token_expires_at),
                    refresh_token_hash=record.refresh_token_hash,
                    refresh_token_expires_at=_to_iso(record.refresh_token_expires_at),
                )
            )
            conn.commit()

    def find_active(self, subject: str, token_hash: str, token_kind: str, now: datetime) -> SessionRecord | None:
        """Return the record whose `token_kind` hash matches and has not expired at `now`.

        token_kind is "access" or "refresh" and selects which hash/expiry pair
        is compared. Returns None if no live record matches.
        """
        if token_kind == ACCESS:
            hash_col, expiry_col = _session_tokens.c.access_token_hash, _session_tokens.c.access_token_expires_at
        elif token_kind == REFRESH:
            hash_col, expiry_col = _session_tokens.c.refresh_token_hash, _session_tokens.c.refresh_token_expires_at
        else:
            raise ValueError(f"unknown token kind {token_kind!r}")
        with self.engine.connect() as conn:
            row = conn.execute(
                _session_tokens.select()
                .where(
                    and_(
                        _session_tokens.c.subject == subject,
                        hash_col == token_hash,
                        expiry_col > _to_iso(now),
                    )
                )
                .limit(1)
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_for_subject(self, subject: str) -> list[SessionRecord]:
        """Return every record for subject, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _session_tokens.select()
                .where(_session_tokens.c.subject == subject)
                .order_by(_session_tokens.c.issued_at.desc())
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def count_for_subject(self, subject: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_session_tokens).where(_session_tokens.c.subject == subject)
            ).scalar()
        return result or 0

    def delete_for_subject(self, subject: str) -> int:
        """Delete every record for subject. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_session_tokens.delete().where(_session_tokens.c.subject == subject))
            conn.commit()
        return result.rowcount

    def delete_expired(self, subject: str, now: datetime) -> int:
        """Delete subject's records whose tokens have both expired."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _session_tokens.delete().where(
                    and_(_session_tokens.c.subject == subject, _expired_clause(_to_iso(now)))
                )
            )
            conn.commit()
        return result.rowcount

    def delete_by_hash(self, subject: str, token_hash: str) -> int:
        """Delete subject's record holding token_hash as either its access or refresh digest."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _session_tokens.delete().where(
                    and_(
                        _session_tokens.c.subject == subject,
                        or_(
                            _session_tokens.c.access_token_hash == token_hash,
                            _session_tokens.c.refresh_token_hash == token_hash,
                        ),
                    )
                )
            )
            conn.commit()
        return result.rowcount

    def delete_by_hash_or_expired(self, subject: str, token_hash: str, now: datetime) -> int:
        """Delete subject's record holding token_hash (either kind) plus any expired ones."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _session_tokens.delete().where(
                    and_(
                        _session_tokens.c.subject == subject,
                        or_(
                            _session_tokens.c.access_token_hash == token_hash,
                            _session_tokens.c.refresh_token_hash == token_hash,
                            _expired_clause(_to_iso(now)),
                        ),
                    )
                )
            )
            conn.commit()
        return result.rowcount

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_record(row) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        subject=row.subject,
        token_type=row.token_type,
        issued_at=_from_iso(row.issued_at),
        access_token_hash=row.access_token_hash,
        access_token_expires_at=_from_iso(row.access_token_expires_at),
        refresh_token_hash=row.refresh_token_hash,
        refresh_token_expires_at=_from_iso(row.refresh_token_expires_at),
    )

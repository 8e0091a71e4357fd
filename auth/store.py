"""
auth/store.py -- SQLAlchemy Core persistence layer for actors.

Pattern: Repository + Data Mapper (same as desk/store.py).
UserStore is the repository; _row_to_actor is the mapper.
Route and dependency code never touches SQL directly.

Invariants enforced here:
  - usernames are unique (UNIQUE column, surfaced as Conflict)
  - exactly one administrator exists system-wide. A second administrator is
    refused on create and on role change, inside the same transaction as the
    write, and a partial unique index on role catches concurrent writers.

branches is a JSON array of branch acronyms; "ALL" grants every branch.

DB path: auth/helpdesk_auth.db by default; production reads AUTH_DATABASE_URL.

Layer rule: no imports from api/, desk/, or cache/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.errors import Conflict
from core.models import Actor, ActorStatus, Role

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'helpdesk_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="end_user"),
    Column("status", String(10), nullable=False, server_default="active"),
    Column("branches", Text),  # JSON array serialized as text
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

# At most one administrator row, enforced by the database as well as _ensure_no_admin.
Index(
    "uq_users_single_administrator",
    _users.c.role,
    unique=True,
    sqlite_where=_users.c.role == Role.ADMINISTRATOR.value,
    postgresql_where=_users.c.role == Role.ADMINISTRATOR.value,
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode; set per-connection because PRAGMAs are not inherited."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _encode_branches(branches: Iterable[str]) -> str:
    return json.dumps(sorted({b.strip().upper() for b in branches if b and b.strip()}))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Actor records.

    Usage:
        store = UserStore()
        store.create_user(Actor(username="admin@example.org", role=Role.ADMINISTRATOR,
                                hashed_password=hash_password("secret")))
        actor = store.get_by_username("admin@example.org")
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
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def get_by_id(self, user_id: int) -> Actor | None:
        """Look up an actor by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_actor(row) if row is not None else None

    def get_by_username(self, username: str) -> Actor | None:
        """Look up an actor by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_actor(row) if row is not None else None

    def list_users(self) -> list[Actor]:
        """Return all actors ordered by username. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_actor(r) for r in rows]

    def oldest_active(self, role: Role) -> Actor | None:
        """Return the longest-tenured active actor holding role, if any.

        Used for default assignment: new tickets go to the oldest support agent,
        converted incidents to the oldest security officer.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select()
                .where(_users.c.role == role.value)
                .where(_users.c.status == ActorStatus.ACTIVE.value)
                .order_by(_users.c.created_at, _users.c.id)
                .limit(1)
            ).fetchone()
        return _row_to_actor(row) if row is not None else None

    def active_ids(self, roles: Iterable[Role]) -> list[int]:
        """IDs of every active actor holding one of roles, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_users.c.id)
                .where(_users.c.role.in_([r.value for r in roles]))
                .where(_users.c.status == ActorStatus.ACTIVE.value)
                .order_by(_users.c.created_at, _users.c.id)
            ).fetchall()
        return [r.id for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, actor: Actor) -> int:
        """Insert a new actor and return its assigned database ID.

        Raises Conflict if the username is taken or if actor is a second
        administrator.
        """
        try:
            with self.engine.begin() as conn:
                if actor.role == Role.ADMINISTRATOR:
                    self._ensure_no_admin(conn)
                result = conn.execute(
                    _users.insert().values(
                        username=actor.username,
                        name=actor.name,
                        hashed_password=actor.hashed_password,
                        role=Role(actor.role).value,
                        status=ActorStatus(actor.status).value,
                        branches=_encode_branches(actor.branches),
                        created_at=actor.created_at.isoformat() if actor.created_at else _now_iso(),
                    )
                )
        except IntegrityError as exc:
            if actor.role == Role.ADMINISTRATOR:
                self._raise_if_admin_taken(exc)
            raise Conflict("A user with that username already exists.", username=actor.username) from exc
        return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing actor.

        Accepted fields: name, role, status, branches, hashed_password.
        branches may be any iterable of acronyms. Returns True if a row was
        updated, False if user_id was not found.
        """
        if "branches" in fields:
            fields["branches"] = _encode_branches(fields["branches"])
        if "status" in fields:
            fields["status"] = ActorStatus(fields["status"]).value
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        try:
            with self.engine.begin() as conn:
                if fields.get("role") == Role.ADMINISTRATOR.value:
                    self._ensure_no_admin(conn, except_id=user_id)
                result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        except IntegrityError as exc:
            self._raise_if_admin_taken(exc, except_id=user_id)
            raise Conflict("The update conflicts with another account.", user_id=user_id) from exc
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given actor."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    def _ensure_no_admin(self, conn, except_id: int | None = None) -> None:
        stmt = select(_users.c.id).where(_users.c.role == Role.ADMINISTRATOR.value)
        if except_id is not None:
            stmt = stmt.where(_users.c.id != except_id)
        existing = conn.execute(stmt.limit(1)).scalar()
        if existing is not None:
            raise Conflict("An administrator already exists.", administrator_id=existing)

    def _raise_if_admin_taken(self, exc: IntegrityError, except_id: int | None = None) -> None:
        """Turn a unique-index failure into the administrator Conflict when another admin won the race."""
        with self.engine.connect() as conn:
            try:
                self._ensure_no_admin(conn, except_id=except_id)
            except Conflict as conflict:
                raise conflict from exc

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_actor(row) -> Actor:
    branches: list[str] = json.loads(row.branches) if row.branches else []
    return Actor(
        id=row.id,
        username=row.username,
        name=row.name or "",
        hashed_password=row.hashed_password,
        role=Role(row.role),
        status=ActorStatus(row.status),
        branches=frozenset(branches),
        created_at=datetime.fromisoformat(row.created_at) if row.created_at else None,
        last_login=datetime.fromisoformat(row.last_login) if row.last_login else None,
    )

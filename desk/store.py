"""
desk/store.py -- SQLAlchemy-backed persistence for tickets, incidents and their side records.

Uses SQLAlchemy Core (not ORM) so the dataclasses in core/models.py remain
the authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change, not a rewrite.

Pattern: Repository + Data Mapper. DeskStore is the repository; the _row_to_*
functions translate rows into domain dataclasses. Managers never build SQL.

Transactions: every write method accepts an optional `conn`. Without one the
method opens and commits its own transaction; with one it joins the caller's
(see DeskStore.transaction()). Callers must not open a second transaction
while holding one -- SQLite test engines share a single DBAPI connection per
thread, so nesting would commit the outer work early.

Uniqueness the engine relies on is declared here, not enforced in code:
  tickets.ticket_number, incidents.incident_number  -- sequence collisions
  incidents.source_ticket_id                        -- one incident per ticket
  sla_rules(priority) WHERE is_active               -- one active rule per priority

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = DeskStore()                                # SQLite default
    store = DeskStore("postgresql://user:pw@host/db")  # PostgreSQL
    with store.transaction() as conn:
        ticket_id = store.insert_ticket(conn, ticket)
    store.close()
"""

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from core.errors import AlreadyConverted, Conflict, DuplicateNumber
from core.models import (
    LOCKED_TICKET_STATUSES,
    Attachment,
    AuditLogEntry,
    Comment,
    DetectionMethod,
    Impact,
    Incident,
    IncidentStatus,
    Notification,
    Priority,
    Severity,
    SlaRule,
    Ticket,
    TicketStatus,
    TimelineEntry,
)

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'helpdesk.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_tickets = Table(
    "tickets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ticket_number", String(40), nullable=False, unique=True),
    Column("branch", String(20), nullable=False),
    Column("request_type", String(50), nullable=False),
    Column("category", String(100)),
    Column("title", String(255), nullable=False),
    Column("description", Text, nullable=False),
    Column("priority", String(10), nullable=False, server_default="medium"),
    Column("status", String(30), nullable=False, server_default="new"),
    Column("created_by", Integer, nullable=False),
    Column("assigned_to", Integer),
    Column("converted_by", Integer),
    Column("sla_due", String(32)),
    Column("affected_system", String(255)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("resolved_at", String(32)),
    Column("closed_at", String(32)),
)

_comments = Table(
    "ticket_comments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ticket_id", Integer, nullable=False, index=True),
    Column("user_id", Integer, nullable=False),
    Column("comment", Text, nullable=False),
    Column("is_internal", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("created_at", String(32), nullable=False),
)

_incidents = Table(
    "incidents",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("incident_number", String(48), nullable=False, unique=True),
    Column("branch", String(20), nullable=False),
    # NULL for incidents created directly; NULLs never collide in UNIQUE.
    Column("source_ticket_id", Integer, unique=True),
    Column("detection_method", String(30), nullable=False, server_default="user_reported"),
    Column("category", String(100), nullable=False),
    Column("title", String(255), nullable=False),
    Column("description", Text, nullable=False),
    Column("severity", String(10), nullable=False, server_default="medium"),
    Column("status", String(20), nullable=False, server_default="new"),
    Column("impact_confidentiality", String(10), nullable=False, server_default="none"),
    Column("impact_integrity", String(10), nullable=False, server_default="none"),
    Column("impact_availability", String(10), nullable=False, server_default="none"),
    Column("affected_asset", String(255)),
    Column("affected_user_id", Integer),
    Column("root_cause", Text),
    Column("resolution_summary", Text),
    Column("created_by", Integer, nullable=False),
    Column("assigned_to", Integer),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("triaged_at", String(32)),
    Column("contained_at", String(32)),
    Column("recovered_at", String(32)),
    Column("closed_at", String(32)),
)

_timeline = Table(
    "incident_timeline",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("incident_id", Integer, nullable=False, index=True),
    Column("user_id", Integer, nullable=False),
    Column("action", String(50), nullable=False),
    Column("description", Text, nullable=False),
    Column("is_internal", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_sla_rules = Table(
    "sla_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("priority", String(10), nullable=False),
    Column("response_time_minutes", Integer, nullable=False),
    Column("resolution_time_hours", Integer, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

Index(
    "uq_sla_rules_active_priority",
    _sla_rules.c.priority,
    unique=True,
    sqlite_where=_sla_rules.c.is_active == 1,
    postgresql_where=_sla_rules.c.is_active == 1,
)

_audit = Table(
    "audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", Integer),
    Column("action", String(50), nullable=False),
    Column("resource_type", String(30), nullable=False),
    Column("resource_id", Integer),
    Column("details", Text),  # JSON object serialized as text
    Column("created_at", String(32), nullable=False),
)

_notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("type", String(50), nullable=False),
    Column("title", String(255), nullable=False),
    Column("message", Text, nullable=False),
    Column("resource_type", String(30)),
    Column("resource_id", Integer),
    Column("is_read", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

# One row per numbering scope, e.g. "TKT-HQ-" or "INC-HQ-2026-".
_sequences = Table(
    "sequence_counters",
    metadata,
    Column("scope", String(80), primary_key=True),
    Column("last_value", Integer, nullable=False),
)

_attachments = Table(
    "attachments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("record_type", String(20), nullable=False),
    Column("record_id", Integer, nullable=False),
    Column("filename", String(255), nullable=False),
    Column("original_name", String(255), nullable=False),
    Column("uploaded_by", Integer),
    Column("created_at", String(32), nullable=False),
)

_branches = Table(
    "branches",
    metadata,
    Column("acronym", String(20), primary_key=True),
    Column("name", String(255), nullable=False),
)

_NUMBER_COLUMNS = {
    "ticket": _tickets.c.ticket_number,
    "incident": _incidents.c.incident_number,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO 8601 string; naive values are treated as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _plain(value: Any) -> Any:
    """Unwrap enums and datetimes into the primitive stored in the column."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _plain_values(values: dict[str, Any]) -> dict[str, Any]:
    return {k: _plain(v) for k, v in values.items()}


def _violated(exc: IntegrityError, column: str) -> bool:
    # SQLite: "UNIQUE constraint failed: tickets.ticket_number"
    # PostgreSQL: 'Key (ticket_number)=(...) already exists'
    return column in str(exc.orig)


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
# Repository
# ---------------------------------------------------------------------------


class DeskStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # FastAPI runs sync handlers in a thread pool, so the same
            # connection may be touched from more than one thread.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open one transaction; commits on clean exit, rolls back on exception."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _use(self, conn: Optional[Connection]) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as own:
                yield own

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Sequence counters
    # ------------------------------------------------------------------

    def bump_counter(self, conn: Connection, scope: str) -> Optional[int]:
        """Atomically increment the counter for scope and return the new value.

        Returns None when the scope has no counter row yet; the caller seeds it.
        The UPDATE takes the row (PostgreSQL) or database (SQLite) write lock, so
        two transactions can never read the same value.
        """
        result = conn.execute(
            _sequences.update().where(_sequences.c.scope == scope).values(last_value=_sequences.c.last_value + 1)
        )
        if result.rowcount == 0:
            return None
        return conn.execute(select(_sequences.c.last_value).where(_sequences.c.scope == scope)).scalar_one()

    def set_counter(self, conn: Connection, scope: str, value: int) -> None:
        """Create or overwrite the counter row for scope.

        A concurrent first use of the same scope loses the primary-key race
        and surfaces as DuplicateNumber, which callers already retry.
        """
        result = conn.execute(_sequences.update().where(_sequences.c.scope == scope).values(last_value=value))
        if result.rowcount:
            return
        try:
            conn.execute(_sequences.insert().values(scope=scope, last_value=value))
        except IntegrityError as exc:
            raise DuplicateNumber("Sequence counter initialised concurrently.", scope=scope) from exc

    def max_number_suffix(self, conn: Connection, kind: str, prefix: str) -> int:
        """Return the highest numeric suffix among existing numbers starting with prefix."""
        column = _NUMBER_COLUMNS[kind]
        number = conn.execute(
            select(column)
            .where(column.startswith(prefix, autoescape=True))
            .order_by(func.length(column).desc(), column.desc())
            .limit(1)
        ).scalar()
        if number is None:
            return 0
        try:
            return int(number[len(prefix) :])
        except ValueError:
            return 0

    # ------------------------------------------------------------------
    # Tickets
    # ------------------------------------------------------------------

    def insert_ticket(self, conn: Connection, ticket: Ticket) -> int:
        """Insert a ticket and return its ID.

        Raises DuplicateNumber if ticket_number is already taken.
        """
        try:
            result = conn.execute(
                _tickets.insert().values(
                    ticket_number=ticket.ticket_number,
                    branch=ticket.branch,
                    request_type=ticket.request_type,
                    category=ticket.category,
                    title=ticket.title,
                    description=ticket.description,
                    priority=_plain(ticket.priority),
                    status=_plain(ticket.status),
                    created_by=ticket.created_by,
                    assigned_to=ticket.assigned_to,
                    converted_by=ticket.converted_by,
                    sla_due=_iso(ticket.sla_due),
                    affected_system=ticket.affected_system,
                    created_at=_iso(ticket.created_at) or _now_iso(),
                    updated_at=_iso(ticket.updated_at or ticket.created_at) or _now_iso(),
                    resolved_at=_iso(ticket.resolved_at),
                    closed_at=_iso(ticket.closed_at),
                )
            )
        except IntegrityError as exc:
            if _violated(exc, "ticket_number"):
                raise DuplicateNumber(
                    "Ticket number already exists.", ticket_number=ticket.ticket_number
                ) from exc
            raise
        return result.inserted_primary_key[0]

    def get_ticket(self, ticket_id: int, conn: Optional[Connection] = None) -> Optional[Ticket]:
        with self._use(conn) as c:
            row = c.execute(_tickets.select().where(_tickets.c.id == ticket_id)).fetchone()
        return _row_to_ticket(row) if row is not None else None

    def list_tickets(
        self,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        branch: Optional[str] = None,
        created_by: Optional[int] = None,
        agent_id: Optional[int] = None,
    ) -> list[Ticket]:
        """Return tickets, newest first.

        created_by restricts to one creator (end users). agent_id restricts to
        tickets unassigned, assigned to that agent, or converted by them.
        """
        stmt = _tickets.select()
        if status is not None:
            stmt = stmt.where(_tickets.c.status == _plain(status))
        if priority is not None:
            stmt = stmt.where(_tickets.c.priority == _plain(priority))
        if branch is not None:
            stmt = stmt.where(_tickets.c.branch == branch)
        if created_by is not None:
            stmt = stmt.where(_tickets.c.created_by == created_by)
        if agent_id is not None:
            stmt = stmt.where(
                or_(
                    _tickets.c.assigned_to.is_(None),
                    _tickets.c.assigned_to == agent_id,
                    _tickets.c.converted_by == agent_id,
                )
            )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_tickets.c.created_at.desc(), _tickets.c.id.desc())).fetchall()
        return [_row_to_ticket(r) for r in rows]

    def list_sla_tracked_tickets(self) -> list[Ticket]:
        """Open tickets that carry an SLA deadline."""
        locked = [s.value for s in LOCKED_TICKET_STATUSES]
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tickets.select().where(_tickets.c.sla_due.is_not(None)).where(_tickets.c.status.not_in(locked))
            ).fetchall()
        return [_row_to_ticket(r) for r in rows]

    def update_ticket(
        self,
        ticket_id: int,
        expected_status: TicketStatus,
        conn: Optional[Connection] = None,
        **values: Any,
    ) -> bool:
        """Write values if the ticket is still in expected_status.

        Returns False when the row is gone or its status moved underneath the
        caller (for example a concurrent conversion froze it).
        """
        with self._use(conn) as c:
            result = c.execute(
                _tickets.update()
                .where(_tickets.c.id == ticket_id)
                .where(_tickets.c.status == _plain(expected_status))
                .values(**_plain_values(values))
            )
        return result.rowcount > 0

    def freeze_ticket(
        self,
        conn: Connection,
        ticket_id: int,
        expected_status: TicketStatus,
        converted_by: int,
        now: datetime,
    ) -> bool:
        """Move the ticket to converted_to_incident if it is still in expected_status."""
        return self.update_ticket(
            ticket_id,
            expected_status,
            conn=conn,
            status=TicketStatus.CONVERTED_TO_INCIDENT,
            converted_by=converted_by,
            updated_at=now,
        )

    def delete_ticket(self, ticket_id: int) -> bool:
        """Delete a ticket and its comments. Locked tickets are never deleted."""
        locked = [s.value for s in LOCKED_TICKET_STATUSES]
        with self.engine.begin() as conn:
            result = conn.execute(
                _tickets.delete().where(_tickets.c.id == ticket_id).where(_tickets.c.status.not_in(locked))
            )
            if result.rowcount == 0:
                return False
            conn.execute(_comments.delete().where(_comments.c.ticket_id == ticket_id))
        return True

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def insert_comment(self, comment: Comment, conn: Optional[Connection] = None) -> int:
        with self._use(conn) as c:
            result = c.execute(
                _comments.insert().values(
                    ticket_id=comment.ticket_id,
                    user_id=comment.user_id,
                    comment=comment.comment,
                    is_internal=int(comment.is_internal),
                    created_at=_iso(comment.created_at) or _now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_comments(
        self,
        ticket_id: int,
        include_internal: bool = True,
        conn: Optional[Connection] = None,
    ) -> list[Comment]:
        """Return comments on a ticket, oldest first."""
        stmt = _comments.select().where(_comments.c.ticket_id == ticket_id)
        if not include_internal:
            stmt = stmt.where(_comments.c.is_internal == 0)
        with self._use(conn) as c:
            rows = c.execute(stmt.order_by(_comments.c.created_at, _comments.c.id)).fetchall()
        return [_row_to_comment(r) for r in rows]

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    def insert_incident(self, conn: Connection, incident: Incident) -> int:
        """Insert an incident and return its ID.

        Raises AlreadyConverted if another incident already references the same
        source ticket, DuplicateNumber if incident_number is taken.
        """
        try:
            result = conn.execute(
                _incidents.insert().values(
                    incident_number=incident.incident_number,
                    branch=incident.branch,
                    source_ticket_id=incident.source_ticket_id,
                    detection_method=_plain(incident.detection_method),
                    category=incident.category,
                    title=incident.title,
                    description=incident.description,
                    severity=_plain(incident.severity),
                    status=_plain(incident.status),
                    impact_confidentiality=_plain(incident.impact_confidentiality),
                    impact_integrity=_plain(incident.impact_integrity),
                    impact_availability=_plain(incident.impact_availability),
                    affected_asset=incident.affected_asset,
                    affected_user_id=incident.affected_user_id,
                    root_cause=incident.root_cause,
                    resolution_summary=incident.resolution_summary,
                    created_by=incident.created_by,
                    assigned_to=incident.assigned_to,
                    created_at=_iso(incident.created_at) or _now_iso(),
                    updated_at=_iso(incident.updated_at or incident.created_at) or _now_iso(),
                    triaged_at=_iso(incident.triaged_at),
                    contained_at=_iso(incident.contained_at),
                    recovered_at=_iso(incident.recovered_at),
                    closed_at=_iso(incident.closed_at),
                )
            )
        except IntegrityError as exc:
            if _violated(exc, "source_ticket_id"):
                raise AlreadyConverted(ticket_id=incident.source_ticket_id) from exc
            if _violated(exc, "incident_number"):
                raise DuplicateNumber(
                    "Incident number already exists.", incident_number=incident.incident_number
                ) from exc
            raise
        return result.inserted_primary_key[0]

    def get_incident(self, incident_id: int, conn: Optional[Connection] = None) -> Optional[Incident]:
        with self._use(conn) as c:
            row = c.execute(_incidents.select().where(_incidents.c.id == incident_id)).fetchone()
        return _row_to_incident(row) if row is not None else None

    def get_incident_by_source(self, ticket_id: int, conn: Optional[Connection] = None) -> Optional[Incident]:
        with self._use(conn) as c:
            row = c.execute(_incidents.select().where(_incidents.c.source_ticket_id == ticket_id)).fetchone()
        return _row_to_incident(row) if row is not None else None

    def list_incidents(
        self,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        category: Optional[str] = None,
        sourced_only: bool = False,
    ) -> list[Incident]:
        """Return incidents, newest first. sourced_only keeps those converted from a ticket."""
        stmt = _incidents.select()
        if status is not None:
            stmt = stmt.where(_incidents.c.status == _plain(status))
        if severity is not None:
            stmt = stmt.where(_incidents.c.severity == _plain(severity))
        if category is not None:
            stmt = stmt.where(_incidents.c.category == category)
        if sourced_only:
            stmt = stmt.where(_incidents.c.source_ticket_id.is_not(None))
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_incidents.c.created_at.desc(), _incidents.c.id.desc())).fetchall()
        return [_row_to_incident(r) for r in rows]

    def update_incident(
        self,
        incident_id: int,
        expected_status: IncidentStatus,
        conn: Optional[Connection] = None,
        **values: Any,
    ) -> bool:
        """Write values if the incident is still in expected_status."""
        with self._use(conn) as c:
            result = c.execute(
                _incidents.update()
                .where(_incidents.c.id == incident_id)
                .where(_incidents.c.status == _plain(expected_status))
                .values(**_plain_values(values))
            )
        return result.rowcount > 0

    def list_unfrozen_conversions(self) -> list[Incident]:
        """Incidents whose source ticket was never moved to converted_to_incident."""
        stmt = (
            select(_incidents)
            .select_from(_incidents.join(_tickets, _incidents.c.source_ticket_id == _tickets.c.id))
            .where(_tickets.c.status != TicketStatus.CONVERTED_TO_INCIDENT.value)
            .order_by(_incidents.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_incident(r) for r in rows]

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    def insert_timeline_entry(self, entry: TimelineEntry, conn: Optional[Connection] = None) -> int:
        with self._use(conn) as c:
            result = c.execute(
                _timeline.insert().values(
                    incident_id=entry.incident_id,
                    user_id=entry.user_id,
                    action=entry.action,
                    description=entry.description,
                    is_internal=int(entry.is_internal),
                    created_at=_iso(entry.created_at) or _now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_timeline(self, incident_id: int, include_internal: bool = True) -> list[TimelineEntry]:
        """Return an incident's timeline, oldest first."""
        stmt = _timeline.select().where(_timeline.c.incident_id == incident_id)
        if not include_internal:
            stmt = stmt.where(_timeline.c.is_internal == 0)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_timeline.c.created_at, _timeline.c.id)).fetchall()
        return [_row_to_timeline(r) for r in rows]

    # ------------------------------------------------------------------
    # SLA rules
    # ------------------------------------------------------------------

    def active_sla_rule(self, priority: Priority) -> Optional[SlaRule]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _sla_rules.select().where(_sla_rules.c.priority == _plain(priority)).where(_sla_rules.c.is_active == 1)
            ).fetchone()
        return _row_to_sla_rule(row) if row is not None else None

    def get_sla_rule(self, rule_id: int) -> Optional[SlaRule]:
        with self.engine.connect() as conn:
            row = conn.execute(_sla_rules.select().where(_sla_rules.c.id == rule_id)).fetchone()
        return _row_to_sla_rule(row) if row is not None else None

    def list_sla_rules(self) -> list[SlaRule]:
        order = {p.value: i for i, p in enumerate((Priority.URGENT, Priority.HIGH, Priority.MEDIUM, Priority.LOW))}
        with self.engine.connect() as conn:
            rows = conn.execute(_sla_rules.select()).fetchall()
        rules = [_row_to_sla_rule(r) for r in rows]
        rules.sort(key=lambda r: (order.get(r.priority.value, 99), not r.is_active, r.id))
        return rules

    def insert_sla_rule(self, rule: SlaRule) -> int:
        """Insert a rule. Raises Conflict if it would be a second active rule for its priority."""
        now = _iso(rule.created_at) or _now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _sla_rules.insert().values(
                        priority=_plain(rule.priority),
                        response_time_minutes=rule.response_time_minutes,
                        resolution_time_hours=rule.resolution_time_hours,
                        is_active=int(rule.is_active),
                        created_at=now,
                        updated_at=_iso(rule.updated_at) or now,
                    )
                )
        except IntegrityError as exc:
            raise Conflict("An active SLA rule already exists for this priority.", priority=_plain(rule.priority)) from exc
        return result.inserted_primary_key[0]

    def update_sla_rule(self, rule_id: int, **values: Any) -> bool:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _sla_rules.update().where(_sla_rules.c.id == rule_id).values(**_plain_values(values))
                )
        except IntegrityError as exc:
            raise Conflict("An active SLA rule already exists for this priority.", rule_id=rule_id) from exc
        return result.rowcount > 0

    def delete_sla_rule(self, rule_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_sla_rules.delete().where(_sla_rules.c.id == rule_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Audit log (append-only: there is no update or delete path)
    # ------------------------------------------------------------------

    def append_audit(self, entry: AuditLogEntry) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _audit.insert().values(
                    actor_id=entry.actor_id,
                    action=entry.action,
                    resource_type=entry.resource_type,
                    resource_id=entry.resource_id,
                    details=json.dumps(entry.details, default=str),
                    created_at=_iso(entry.created_at) or _now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_audit(self, limit: int = 100) -> list[AuditLogEntry]:
        """Most recent audit entries first."""
        with self.engine.connect() as conn:
            rows = conn.execute(_audit.select().order_by(_audit.c.id.desc()).limit(limit)).fetchall()
        return [_row_to_audit(r) for r in rows]

    def audit_for(self, resource_type: str, resource_id: int) -> list[AuditLogEntry]:
        """All audit entries for one resource, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit.select()
                .where(_audit.c.resource_type == resource_type)
                .where(_audit.c.resource_id == resource_id)
                .order_by(_audit.c.id)
            ).fetchall()
        return [_row_to_audit(r) for r in rows]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def insert_notification(self, notification: Notification) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _notifications.insert().values(
                    user_id=notification.user_id,
                    type=notification.type,
                    title=notification.title,
                    message=notification.message,
                    resource_type=notification.resource_type,
                    resource_id=notification.resource_id,
                    is_read=int(notification.is_read),
                    created_at=_iso(notification.created_at) or _now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_notifications(self, user_id: int, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        stmt = _notifications.select().where(_notifications.c.user_id == user_id)
        if unread_only:
            stmt = stmt.where(_notifications.c.is_read == 0)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_notifications.c.id.desc()).limit(limit)).fetchall()
        return [_row_to_notification(r) for r in rows]

    def unread_count(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count())
                .select_from(_notifications)
                .where(_notifications.c.user_id == user_id)
                .where(_notifications.c.is_read == 0)
            ).scalar_one()

    def mark_notification_read(self, notification_id: int, user_id: int) -> bool:
        """Mark one notification read. The WHERE clause enforces ownership [IDOR guard]."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _notifications.update()
                .where(_notifications.c.id == notification_id)
                .where(_notifications.c.user_id == user_id)
                .values(is_read=1)
            )
        return result.rowcount > 0

    def mark_all_read(self, user_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _notifications.update()
                .where(_notifications.c.user_id == user_id)
                .where(_notifications.c.is_read == 0)
                .values(is_read=1)
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def insert_attachment(self, attachment: Attachment) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _attachments.insert().values(
                    record_type=attachment.record_type,
                    record_id=attachment.record_id,
                    filename=attachment.filename,
                    original_name=attachment.original_name,
                    uploaded_by=attachment.uploaded_by,
                    created_at=_iso(attachment.created_at) or _now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_attachments(self, record_type: str, record_id: int) -> list[Attachment]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _attachments.select()
                .where(_attachments.c.record_type == record_type)
                .where(_attachments.c.record_id == record_id)
                .order_by(_attachments.c.id)
            ).fetchall()
        return [_row_to_attachment(r) for r in rows]

    def delete_attachment_rows(self, record_type: str, record_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _attachments.delete()
                .where(_attachments.c.record_type == record_type)
                .where(_attachments.c.record_id == record_id)
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Branches (reference data)
    # ------------------------------------------------------------------

    def list_branch_acronyms(self) -> list[str]:
        with self.engine.connect() as conn:
            return list(conn.execute(select(_branches.c.acronym).order_by(_branches.c.acronym)).scalars())

    def upsert_branch(self, acronym: str, name: str) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(_branches.update().where(_branches.c.acronym == acronym).values(name=name))
            if result.rowcount == 0:
                conn.execute(_branches.insert().values(acronym=acronym, name=name))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_ticket(row) -> Ticket:
    return Ticket(
        id=row.id,
        ticket_number=row.ticket_number,
        branch=row.branch,
        request_type=row.request_type,
        category=row.category,
        title=row.title,
        description=row.description,
        priority=Priority(row.priority),
        status=TicketStatus(row.status),
        created_by=row.created_by,
        assigned_to=row.assigned_to,
        converted_by=row.converted_by,
        sla_due=_dt(row.sla_due),
        affected_system=row.affected_system,
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        resolved_at=_dt(row.resolved_at),
        closed_at=_dt(row.closed_at),
    )


def _row_to_comment(row) -> Comment:
    return Comment(
        id=row.id,
        ticket_id=row.ticket_id,
        user_id=row.user_id,
        comment=row.comment,
        is_internal=bool(row.is_internal),
        created_at=_dt(row.created_at),
    )


def _row_to_incident(row) -> Incident:
    return Incident(
        id=row.id,
        incident_number=row.incident_number,
        branch=row.branch,
        source_ticket_id=row.source_ticket_id,
        detection_method=DetectionMethod(row.detection_method),
        category=row.category,
        title=row.title,
        description=row.description,
        severity=Severity(row.severity),
        status=IncidentStatus(row.status),
        impact_confidentiality=Impact(row.impact_confidentiality),
        impact_integrity=Impact(row.impact_integrity),
        impact_availability=Impact(row.impact_availability),
        affected_asset=row.affected_asset,
        affected_user_id=row.affected_user_id,
        root_cause=row.root_cause,
        resolution_summary=row.resolution_summary,
        created_by=row.created_by,
        assigned_to=row.assigned_to,
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        triaged_at=_dt(row.triaged_at),
        contained_at=_dt(row.contained_at),
        recovered_at=_dt(row.recovered_at),
        closed_at=_dt(row.closed_at),
    )


def _row_to_timeline(row) -> TimelineEntry:
    return TimelineEntry(
        id=row.id,
        incident_id=row.incident_id,
        user_id=row.user_id,
        action=row.action,
        description=row.description,
        is_internal=bool(row.is_internal),
        created_at=_dt(row.created_at),
    )


def _row_to_sla_rule(row) -> SlaRule:
    return SlaRule(
        id=row.id,
        priority=Priority(row.priority),
        response_time_minutes=row.response_time_minutes,
        resolution_time_hours=row.resolution_time_hours,
        is_active=bool(row.is_active),
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
    )


def _row_to_audit(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        actor_id=row.actor_id,
        action=row.action,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        details=json.loads(row.details) if row.details else {},
        created_at=_dt(row.created_at),
    )


def _row_to_notification(row) -> Notification:
    return Notification(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        title=row.title,
        message=row.message,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        is_read=bool(row.is_read),
        created_at=_dt(row.created_at),
    )


def _row_to_attachment(row) -> Attachment:
    return Attachment(
        id=row.id,
        record_type=row.record_type,
        record_id=row.record_id,
        filename=row.filename,
        original_name=row.original_name,
        uploaded_by=row.uploaded_by,
        created_at=_dt(row.created_at),
    )

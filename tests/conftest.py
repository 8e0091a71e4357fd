"""
tests/conftest.py -- Shared fixtures for helpdesk unit and integration tests.

This module provides:
  - FakeClock: a controllable clock injected into managers for SLA and stamp tests
  - desk: managers over fresh in-memory stores, with one actor per role
  - _make_test_stores(): isolated named shared-memory DBs for the API tests
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus the administrator's JWT
  - role_headers: Authorization headers for every seeded role

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API tests because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit tests stay on one thread and use plain :memory:.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from cache.store import BranchDirectory
from core.config import get_settings
from core.models import Actor, Priority, Role, SlaRule
from core.sla import SlaCalculator
from desk.attachments import AttachmentIndex
from desk.conversion import ConversionCoordinator
from desk.dispatcher import Dispatcher
from desk.incidents import IncidentManager
from desk.numbering import NumberingService
from desk.sla_rules import SlaAdmin
from desk.store import DeskStore
from desk.tickets import TicketManager

ADMIN_PASSWORD = "testpass123"

# (key, username, role, branches) -- creation order decides default assignment:
# "agent" and "officer" are the longest-tenured of their roles.
_ACTORS = (
    ("admin", "admin@example.org", Role.ADMINISTRATOR, {"ALL"}),
    ("agent", "agent@example.org", Role.SUPPORT_AGENT, {"HQ"}),
    ("agent2", "agent2@example.org", Role.SUPPORT_AGENT, {"HQ"}),
    ("officer", "officer@example.org", Role.SECURITY_OFFICER, {"ALL"}),
    ("officer2", "officer2@example.org", Role.SECURITY_OFFICER, {"ALL"}),
    ("user", "user@example.org", Role.END_USER, {"HQ"}),
    ("other_user", "other@example.org", Role.END_USER, {"HQ"}),
    ("nyc_user", "nyc@example.org", Role.END_USER, {"NYC"}),
)

_SLA_HOURS = {Priority.URGENT: 4, Priority.HIGH: 8, Priority.MEDIUM: 12, Priority.LOW: 24}


# ---------------------------------------------------------------------------
# Shared seeding helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


def _seed_actors(user_store: UserStore) -> dict[str, Actor]:
    actors: dict[str, Actor] = {}
    for key, username, role, branches in _ACTORS:
        hashed = hash_password(ADMIN_PASSWORD) if key == "admin" else None
        uid = user_store.create_user(
            Actor(
                username=username,
                name=key.replace("_", " ").title(),
                role=role,
                branches=frozenset(branches),
                hashed_password=hashed,
            )
        )
        actors[key] = user_store.get_by_id(uid)
    return actors


def _seed_reference_data(store: DeskStore) -> None:
    store.upsert_branch("HQ", "Headquarters")
    store.upsert_branch("NYC", "New York")
    for priority, hours in _SLA_HOURS.items():
        store.insert_sla_rule(SlaRule(priority, 60, hours))


# ---------------------------------------------------------------------------
# Unit-level fixture: managers over in-memory stores
# ---------------------------------------------------------------------------


@dataclass
class Desk:
    store: DeskStore
    users: UserStore
    clock: FakeClock
    branches: BranchDirectory
    numbering: NumberingService
    dispatcher: Dispatcher
    attachments: AttachmentIndex
    tickets: TicketManager
    incidents: IncidentManager
    conversion: ConversionCoordinator
    sla_admin: SlaAdmin
    actors: dict[str, Actor] = field(default_factory=dict)

    def ticket(self, actor_key: str = "user", **fields):
        """File a ticket with sensible defaults as the given actor."""
        body = {"request_type": "Access", "title": "VPN drops", "description": "Disconnects every hour"}
        body.update(fields)
        return self.tickets.create(self.actors[actor_key], body)

    def audit_actions(self) -> list[str]:
        return [e.action for e in reversed(self.store.list_audit(limit=1000))]


@pytest.fixture
def desk(tmp_path) -> Generator[Desk, None, None]:
    store = DeskStore("sqlite:///:memory:")
    users = UserStore("sqlite:///:memory:")
    _seed_reference_data(store)
    actors = _seed_actors(users)
    clock = FakeClock()

    branches = BranchDirectory(store.list_branch_acronyms, fallback=["HQ"])
    sla = SlaCalculator(store)
    numbering = NumberingService(store, branches)
    dispatcher = Dispatcher(store, clock=clock)
    attachments = AttachmentIndex(store, str(tmp_path))
    yield Desk(
        store=store,
        users=users,
        clock=clock,
        branches=branches,
        numbering=numbering,
        dispatcher=dispatcher,
        attachments=attachments,
        tickets=TicketManager(store, users, sla, numbering, dispatcher, attachments, clock=clock),
        incidents=IncidentManager(store, users, numbering, dispatcher, clock=clock),
        conversion=ConversionCoordinator(store, users, numbering, dispatcher, clock=clock),
        sla_admin=SlaAdmin(store, sla, dispatcher, clock=clock),
        actors=actors,
    )
    store.close()
    users.close()


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[DeskStore, UserStore]:
    """Create isolated named shared-memory SQLite stores for test isolation.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    desk_url = f"sqlite:///file:test_desk_{db_suffix}?mode=memory&cache=shared&uri=true"
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    return DeskStore(db_url=desk_url), UserStore(db_url=auth_url)


def _patch_lifespan(store: DeskStore, user_store: UserStore):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app.state, store, user_store, get_settings())
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_stores(request) -> Generator[tuple[DeskStore, UserStore, dict[str, Actor]], None, None]:
    store, user_store = _make_test_stores(request.module.__name__.rsplit(".", 1)[-1])
    _seed_reference_data(store)
    actors = _seed_actors(user_store)
    yield store, user_store, actors
    store.close()
    user_store.close()


@pytest.fixture(scope="module")
def api_client(api_stores) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use isolated in-memory stores.
    """
    store, user_store, actors = api_stores
    admin = actors["admin"]
    token = create_access_token(admin.id, admin.username, admin.role.value, expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(store, user_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id


@pytest.fixture(scope="module")
def role_headers(api_stores) -> dict[str, dict[str, str]]:
    """Bearer headers keyed like the seeded actors ("admin", "agent", "user", ...)."""
    _store, _user_store, actors = api_stores
    headers = {}
    for key, actor in actors.items():
        token = create_access_token(actor.id, actor.username, actor.role.value, expire_seconds=3600)
        headers[key] = {"Authorization": f"Bearer {token}"}
    return headers


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Each test starts with empty rate-limit counters."""
    limiter.reset()

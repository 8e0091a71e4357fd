"""Unit tests for desk/numbering.py -- sequence allocation and collision recovery.

Covers:
- Per-branch ticket sequences and per-branch-per-year incident sequences
- 1,000 sequential allocations stay unique and strictly increasing
- First use of a scope adopts the highest number already stored
- A stale counter collides, and with_retry() re-seeds and succeeds once
- Branch resolution (default branch, ALL, unknown acronyms)
"""

import pytest

from cache.store import BranchDirectory
from core.errors import DuplicateNumber, ValidationError
from core.models import Actor, Role, Ticket
from desk.numbering import NumberingService
from desk.store import DeskStore


@pytest.fixture
def numbering():
    store = DeskStore("sqlite:///:memory:")
    store.upsert_branch("HQ", "Headquarters")
    store.upsert_branch("NYC", "New York")
    yield NumberingService(store, BranchDirectory(store.list_branch_acronyms))
    store.close()


def _draw(numbering: NumberingService, branch: str = "HQ") -> str:
    with numbering.store.transaction() as conn:
        return numbering.next_ticket_number(conn, branch)


def _insert_ticket(store: DeskStore, number: str) -> None:
    with store.transaction() as conn:
        store.insert_ticket(
            conn,
            Ticket(
                branch="HQ",
                request_type="r",
                title="t",
                description="d",
                created_by=1,
                ticket_number=number,
            ),
        )


class TestAllocation:
    def test_first_ticket_number(self, numbering) -> None:
        assert _draw(numbering) == "TKT-HQ-000001"

    def test_branches_are_independent(self, numbering) -> None:
        assert _draw(numbering, "HQ") == "TKT-HQ-000001"
        assert _draw(numbering, "HQ") == "TKT-HQ-000002"
        assert _draw(numbering, "NYC") == "TKT-NYC-000001"

    def test_incident_sequence_restarts_each_year(self, numbering) -> None:
        with numbering.store.transaction() as conn:
            assert numbering.next_incident_number(conn, "HQ", 2026) == "INC-HQ-2026-000001"
            assert numbering.next_incident_number(conn, "HQ", 2026) == "INC-HQ-2026-000002"
            assert numbering.next_incident_number(conn, "HQ", 2027) == "INC-HQ-2027-000001"

    def test_thousand_sequential_draws_strictly_increase(self, numbering) -> None:
        drawn = [_draw(numbering) for _ in range(1000)]
        suffixes = [int(n.rsplit("-", 1)[1]) for n in drawn]
        assert len(set(drawn)) == 1000
        assert suffixes == list(range(1, 1001))

    def test_rolled_back_draw_is_reused(self, numbering) -> None:
        with pytest.raises(RuntimeError):
            with numbering.store.transaction() as conn:
                numbering.next_ticket_number(conn, "HQ")
                raise RuntimeError("insert failed")
        assert _draw(numbering) == "TKT-HQ-000001"

    def test_width_grows_past_six_digits(self, numbering) -> None:
        _insert_ticket(numbering.store, "TKT-HQ-999999")
        assert _draw(numbering) == "TKT-HQ-1000000"
        assert _draw(numbering) == "TKT-HQ-1000001"


class TestSeeding:
    def test_first_use_adopts_existing_numbers(self, numbering) -> None:
        _insert_ticket(numbering.store, "TKT-HQ-000041")
        assert _draw(numbering) == "TKT-HQ-000042"

    def test_other_branch_numbers_are_ignored(self, numbering) -> None:
        _insert_ticket(numbering.store, "TKT-HQX-000500")
        assert _draw(numbering) == "TKT-HQ-000001"


class TestRetry:
    def test_stale_counter_recovers_through_manager(self, desk) -> None:
        first = desk.ticket()
        with desk.store.transaction() as conn:
            desk.store.set_counter(conn, "TKT-HQ-", 0)
        second = desk.ticket()
        assert first.ticket_number == "TKT-HQ-000001"
        assert second.ticket_number == "TKT-HQ-000002"

    def test_with_retry_reseeds_once(self, numbering) -> None:
        calls: list[bool] = []

        def operation(reseed: bool) -> str:
            calls.append(reseed)
            if not reseed:
                raise DuplicateNumber("taken")
            return "ok"

        assert numbering.with_retry(operation) == "ok"
        assert calls == [False, True]

    def test_with_retry_gives_up_after_second_collision(self, numbering) -> None:
        calls: list[bool] = []

        def operation(reseed: bool) -> str:
            calls.append(reseed)
            raise DuplicateNumber("taken")

        with pytest.raises(DuplicateNumber):
            numbering.with_retry(operation)
        assert calls == [False, True]

    def test_duplicate_insert_raises_duplicate_number(self, numbering) -> None:
        _insert_ticket(numbering.store, "TKT-HQ-000001")
        with pytest.raises(DuplicateNumber):
            _insert_ticket(numbering.store, "TKT-HQ-000001")


class TestResolveBranch:
    def _actor(self, role: Role, *branches: str) -> Actor:
        return Actor(username="x@example.org", role=role, id=1, branches=frozenset(branches))

    def test_defaults_to_single_own_branch(self, numbering) -> None:
        assert numbering.resolve_branch(self._actor(Role.END_USER, "NYC"), None) == "NYC"

    def test_normalizes_case_and_whitespace(self, numbering) -> None:
        assert numbering.resolve_branch(self._actor(Role.SECURITY_OFFICER, "ALL"), " hq ") == "HQ"

    def test_all_is_never_a_numbering_scope(self, numbering) -> None:
        with pytest.raises(ValidationError):
            numbering.resolve_branch(self._actor(Role.ADMINISTRATOR, "ALL"), "ALL")

    def test_several_branches_require_explicit_choice(self, numbering) -> None:
        actor = self._actor(Role.END_USER, "HQ", "NYC")
        with pytest.raises(ValidationError):
            numbering.resolve_branch(actor, None)
        assert numbering.resolve_branch(actor, "NYC") == "NYC"

    def test_end_user_with_all_may_file_anywhere(self, numbering) -> None:
        assert numbering.resolve_branch(self._actor(Role.END_USER, "ALL", "HQ"), "NYC") == "NYC"

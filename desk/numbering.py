"""
desk/numbering.py -- Human-readable sequence numbers for tickets and incidents.

Formats:
    TKT-<BRANCH>-000123          one sequence per branch
    INC-<BRANCH>-<YEAR>-000123   one sequence per branch and calendar year

Each scope has a row in sequence_counters that is incremented inside the
caller's insert transaction, so two concurrent creations can never draw the
same value. The first use of a scope seeds the counter from the highest
number already stored, which also adopts numbers written before the counter
table existed.

The unique constraints on ticket_number / incident_number stay as the last
line of defence: a collision surfaces as DuplicateNumber, and
NumberingService.with_retry() re-seeds the counter and runs the insert again
exactly once before giving up.
"""

import logging
from collections.abc import Callable
from typing import Optional, TypeVar

from sqlalchemy.engine import Connection

from cache.store import BranchDirectory
from core.errors import DuplicateNumber, ValidationError
from core.models import ALL_BRANCHES, Actor, Role
from desk.store import DeskStore

logger = logging.getLogger("helpdesk.numbering")

T = TypeVar("T")

_WIDTH = 6


def ticket_prefix(branch: str) -> str:
    return f"TKT-{branch}-"


def incident_prefix(branch: str, year: int) -> str:
    return f"INC-{branch}-{year}-"


class NumberingService:
    def __init__(self, store: DeskStore, branches: BranchDirectory) -> None:
        self.store = store
        self.branches = branches

    # ------------------------------------------------------------------
    # Branch scope
    # ------------------------------------------------------------------

    def resolve_branch(self, actor: Actor, branch: Optional[str]) -> str:
        """Pick and validate the numbering branch for a new record.

        An omitted branch defaults to the actor's only branch. End users may
        only file within their own branches unless they hold ALL.
        """
        if not branch:
            own = sorted(b for b in actor.branches if b != ALL_BRANCHES)
            if len(own) != 1:
                raise ValidationError("Branch is required.", field="branch")
            branch = own[0]
        branch = branch.strip().upper()
        if branch == ALL_BRANCHES or branch not in self.branches.valid_branch_acronyms():
            raise ValidationError(f"Unknown branch '{branch}'.", field="branch")
        if (
            actor.role == Role.END_USER
            and ALL_BRANCHES not in actor.branches
            and branch not in actor.branches
        ):
            raise ValidationError(f"You cannot file records for branch '{branch}'.", field="branch")
        return branch

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def next_ticket_number(self, conn: Connection, branch: str, reseed: bool = False) -> str:
        prefix = ticket_prefix(branch)
        return f"{prefix}{self._next(conn, 'ticket', prefix, reseed):0{_WIDTH}d}"

    def next_incident_number(self, conn: Connection, branch: str, year: int, reseed: bool = False) -> str:
        prefix = incident_prefix(branch, year)
        return f"{prefix}{self._next(conn, 'incident', prefix, reseed):0{_WIDTH}d}"

    def _next(self, conn: Connection, kind: str, prefix: str, reseed: bool) -> int:
        if not reseed:
            value = self.store.bump_counter(conn, prefix)
            if value is not None:
                return value
        value = self.store.max_number_suffix(conn, kind, prefix) + 1
        self.store.set_counter(conn, prefix, value)
        return value

    def with_retry(self, operation: Callable[[bool], T]) -> T:
        """Run operation(reseed), retrying once with reseed=True on DuplicateNumber.

        operation must open its own transaction so the failed attempt is rolled
        back before the retry starts.
        """
        try:
            return operation(False)
        except DuplicateNumber as exc:
            logger.warning("Sequence collision (%s); retrying with a re-seeded counter", exc.message)
        return operation(True)

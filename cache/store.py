"""
cache/store.py -- Read-through cache for branch reference data.

Branch acronyms change rarely but are checked on every ticket and incident
creation, so BranchDirectory keeps the last loaded set for a freshness window
(default 60 seconds) instead of querying the branches table each time.

The clock is injected so tests can move time forward without sleeping, and
invalidate() drops the cached set after an administrator edits branches.
Nothing is held in module globals: each app instance owns its directory.

When the branches table is empty or unreadable the configured fallback set is
served; a failed load is not cached, so the next call tries the store again.

Usage:
    branches = BranchDirectory(store.list_branch_acronyms, fallback=["HQ"])
    branches.valid_branch_acronyms()   # frozenset({"HQ", ...})
    branches.invalidate()
"""

import logging
import time
from collections.abc import Callable, Iterable
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from core.models import ALL_BRANCHES

logger = logging.getLogger("helpdesk.branches")

_DEFAULT_TTL = 60  # seconds


class BranchDirectory:
    def __init__(
        self,
        loader: Callable[[], Iterable[str]],
        fallback: Iterable[str] = (),
        ttl: float = _DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.loader = loader
        self.fallback = self._normalize(fallback)
        self.ttl = ttl
        self.clock = clock
        self._cached: Optional[frozenset[str]] = None
        self._loaded_at = 0.0

    def valid_branch_acronyms(self) -> frozenset[str]:
        """Return the acronyms records may be numbered under (never ALL)."""
        if self._cached is not None and self.clock() - self._loaded_at <= self.ttl:
            return self._cached
        try:
            loaded = self._normalize(self.loader())
        except SQLAlchemyError:
            logger.warning("Branch lookup failed; serving configured defaults", exc_info=True)
            return self.fallback
        self._cached = loaded or self.fallback
        self._loaded_at = self.clock()
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    @staticmethod
    def _normalize(acronyms: Iterable[str]) -> frozenset[str]:
        cleaned = {a.strip().upper() for a in acronyms if a and a.strip()}
        cleaned.discard(ALL_BRANCHES)
        return frozenset(cleaned)

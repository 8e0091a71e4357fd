"""Unit tests for cache/store.py BranchDirectory.

The loader and clock are plain callables, so no database is needed.
"""

from sqlalchemy.exc import OperationalError

from cache.store import BranchDirectory


class _Loader:
    def __init__(self, *acronyms: str) -> None:
        self.acronyms = list(acronyms)
        self.calls = 0
        self.fail = False

    def __call__(self) -> list[str]:
        self.calls += 1
        if self.fail:
            raise OperationalError("SELECT acronym FROM branches", {}, Exception("no such table"))
        return list(self.acronyms)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_serves_cached_set_within_ttl() -> None:
    loader, clock = _Loader("HQ"), _Clock()
    branches = BranchDirectory(loader, ttl=60, clock=clock)
    assert branches.valid_branch_acronyms() == frozenset({"HQ"})

    loader.acronyms.append("NYC")
    clock.now += 59
    assert branches.valid_branch_acronyms() == frozenset({"HQ"})
    assert loader.calls == 1


def test_reloads_after_ttl() -> None:
    loader, clock = _Loader("HQ"), _Clock()
    branches = BranchDirectory(loader, ttl=60, clock=clock)
    branches.valid_branch_acronyms()
    loader.acronyms.append("NYC")
    clock.now += 61
    assert branches.valid_branch_acronyms() == frozenset({"HQ", "NYC"})
    assert loader.calls == 2


def test_invalidate_forces_reload() -> None:
    loader = _Loader("HQ")
    branches = BranchDirectory(loader, clock=_Clock())
    branches.valid_branch_acronyms()
    loader.acronyms.append("LON")
    branches.invalidate()
    assert "LON" in branches.valid_branch_acronyms()


def test_normalizes_and_drops_all() -> None:
    branches = BranchDirectory(_Loader(" hq ", "ALL", "", "nyc"), clock=_Clock())
    assert branches.valid_branch_acronyms() == frozenset({"HQ", "NYC"})


def test_empty_table_serves_fallback() -> None:
    branches = BranchDirectory(_Loader(), fallback=["hq"], clock=_Clock())
    assert branches.valid_branch_acronyms() == frozenset({"HQ"})


def test_failed_load_serves_fallback_and_is_not_cached() -> None:
    loader = _Loader("HQ", "NYC")
    loader.fail = True
    branches = BranchDirectory(loader, fallback=["HQ"], clock=_Clock())
    assert branches.valid_branch_acronyms() == frozenset({"HQ"})

    loader.fail = False
    assert branches.valid_branch_acronyms() == frozenset({"HQ", "NYC"})
    assert loader.calls == 2

import logging

import pytest

from skena.storage import Library, LocalStore


@pytest.fixture(autouse=True)
def _reset_in_flight():
    """Scripts left marked in flight by a failed test must not leak into the next."""
    from skena.stage import scheduler

    scheduler._IN_FLIGHT.clear()
    yield
    scheduler._IN_FLIGHT.clear()


@pytest.fixture
def store(tmp_path) -> LocalStore:
    """A fresh SQLite store per test."""
    return LocalStore(tmp_path / "data")


@pytest.fixture
def library(store) -> Library:
    return Library(store)


@pytest.fixture
def caplog_warnings(caplog):
    caplog.set_level(logging.WARNING)
    return caplog

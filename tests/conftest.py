"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Callable, Generator, Iterable

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from gotdone.journal import (  # noqa: WPS433 (importing from a module)
    DraftNotFoundError,
    JournalEntry,
    app,
    init_db,
    issue_auth_token,
)

CSRF = "test-csrf-token"     # shared constant so cookie and header match


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        DATASTORE=None,
        AUTHENTICATOR=None,
        RECENT_FETCH_WORKERS=1,
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _fake_clock():
    """
    Patch gotdone.journal.utc_now for the whole test session so every call
    returns an ever-increasing timestamp (one second apart).
    """
    from gotdone import journal  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(journal, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end


# ───────────────────────── in-memory datastore ────────────────────────
class MemoryDatastore:
    """
    Dict-backed stand-in for SqliteDatastore.

    *fail_for* lists usernames whose `get_entries` raises; *fail_users*
    makes `users()` raise.
    """

    def __init__(
        self,
        entries: dict[str, Iterable[JournalEntry]] | None = None,
        *,
        fail_for: Iterable[str] = (),
        fail_users: bool = False,
    ):
        self.entries = {u: list(es) for u, es in (entries or {}).items()}
        self.drafts: dict[tuple[str, str], JournalEntry] = {}
        self.fail_for = set(fail_for)
        self.fail_users = fail_users
        self.fetched: list[str] = []

    def users(self) -> list[str]:
        if self.fail_users:
            raise RuntimeError("datastore offline")
        return list(self.entries)

    def get_entries(self, username: str) -> list[JournalEntry]:
        self.fetched.append(username)
        if username in self.fail_for:
            raise RuntimeError(f"secret storage path for {username}")
        return list(self.entries.get(username, []))

    def get_draft(self, username: str, date_: str) -> JournalEntry:
        try:
            return self.drafts[(username, date_)]
        except KeyError:
            raise DraftNotFoundError(username, date_) from None

    def insert_entry(self, username: str, entry: JournalEntry) -> None:
        kept = [e for e in self.entries.get(username, []) if e.date != entry.date]
        self.entries[username] = kept + [entry]

    def insert_draft(self, username: str, entry: JournalEntry) -> None:
        self.drafts[(username, entry.date)] = entry


@pytest.fixture
def use_datastore(monkeypatch) -> Callable[[MemoryDatastore], MemoryDatastore]:
    """Route every datastore lookup in the app to the given double."""
    def _install(ds: MemoryDatastore) -> MemoryDatastore:
        monkeypatch.setitem(app.config, "DATASTORE", ds)
        return ds
    return _install


@pytest.fixture
def login() -> Callable[[FlaskClient, str], None]:
    """Set a valid auth cookie (and matching CSRF cookie) on *client*."""
    def _login(client: FlaskClient, username: str) -> None:
        client.set_cookie(app.config["AUTH_COOKIE_NAME"], issue_auth_token(username))
        client.set_cookie("csrf_token", CSRF)
    return _login

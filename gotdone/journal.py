#!/usr/bin/env python3
"""
A single-file journal service.

Users publish one markdown update per date; ``/api/recentEntries`` merges
everybody's updates into one newest-first feed.
"""

import json
import os
import re
import secrets
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass
from datetime import date, datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Iterable, Protocol, Sequence, TypedDict

import click
from flask import Flask, abort, request
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("GOTDONE_DATABASE", str(ROOT / "journal.sqlite3")))

SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = os.environ.get("GOTDONE_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = (
        SECRET_FILE.read_text().strip()
        if SECRET_FILE.exists()
        else secrets.token_hex(32)
    )
    SECRET_FILE.write_text(SECRET_KEY)

# Entries shorter than this are test posts or placeholders.
RECENT_MIN_LENGTH = int(os.environ.get("RECENT_MIN_LENGTH", "30"))
RECENT_DEFAULT_LIMIT = int(os.environ.get("RECENT_DEFAULT_LIMIT", "15"))
RECENT_FETCH_WORKERS = int(os.environ.get("RECENT_FETCH_WORKERS", "1"))

AUTH_COOKIE_NAME = os.environ.get("AUTH_COOKIE_NAME", "auth_token")
AUTH_TOKEN_MAX_AGE = int(os.environ.get("AUTH_TOKEN_MAX_AGE", str(30 * 24 * 3600)))
CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRFToken"

CSP_EXTRA_SCRIPT_SRC = os.environ.get("CSP_EXTRA_SCRIPT_SRC", "").split()
CSP_EXTRA_STYLE_SRC = os.environ.get("CSP_EXTRA_STYLE_SRC", "").split()
CSP_DIRECTIVES = {
    "default-src": ("'self'",),
    "script-src": ("'self'",),
    "style-src": ("'self'",),
    "frame-src": ("'none'",),
    "img-src": ("'self'", "data:"),
}

DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")
INT_RE = re.compile(r"-?[0-9]+")
USERNAME_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")
TIMESTAMP_FMT = "%Y-%m-%dT%H:%M:%SZ"  # RFC 3339, always UTC

SCHEMA = """
    ------------------------------------------------------------
    -- 1.  Published entries (one per user and date)
    ------------------------------------------------------------
    CREATE TABLE IF NOT EXISTS entry (
        username       TEXT NOT NULL,
        date           TEXT NOT NULL,              -- YYYY-MM-DD
        last_modified  TEXT NOT NULL,              -- RFC 3339 UTC
        markdown       TEXT NOT NULL,
        PRIMARY KEY (username, date)
    );

    ------------------------------------------------------------
    -- 2.  Drafts (same shape, never shown in feeds)
    ------------------------------------------------------------
    CREATE TABLE IF NOT EXISTS draft (
        username       TEXT NOT NULL,
        date           TEXT NOT NULL,
        last_modified  TEXT NOT NULL,
        markdown       TEXT NOT NULL,
        PRIMARY KEY (username, date)
    );
"""

try:
    __version__ = version("gotdone")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    RECENT_MIN_LENGTH=RECENT_MIN_LENGTH,
    RECENT_DEFAULT_LIMIT=RECENT_DEFAULT_LIMIT,
    RECENT_FETCH_WORKERS=RECENT_FETCH_WORKERS,
    AUTH_COOKIE_NAME=AUTH_COOKIE_NAME,
    AUTH_TOKEN_MAX_AGE=AUTH_TOKEN_MAX_AGE,
    CSP_EXTRA_SCRIPT_SRC=CSP_EXTRA_SCRIPT_SRC,
    CSP_EXTRA_STYLE_SRC=CSP_EXTRA_STYLE_SRC,
    DATASTORE=None,  # None ⇒ SqliteDatastore(DATABASE)
    AUTHENTICATOR=None,  # None ⇒ SignedTokenAuthenticator(SECRET_KEY)
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


###############################################################################
# Errors
###############################################################################
class ValidationError(ValueError):
    """Client sent a malformed or out-of-range parameter (→ 400)."""


class AggregationError(RuntimeError):
    """
    A datastore call failed while the recent feed was being built.

    ``username`` is ``None`` when listing the users themselves failed.
    """

    def __init__(self, username: str | None, cause: BaseException):
        self.username = username
        self.cause = cause
        who = f"user {username}" if username is not None else "users"
        super().__init__(f"Failed to retrieve entries for {who}: {cause}")


class EncodingError(RuntimeError):
    """A response payload could not be serialized to JSON."""


class DraftNotFoundError(LookupError):
    def __init__(self, username: str, date_: str):
        self.username = username
        self.date = date_
        super().__init__(f"No draft for {username} on {date_}")


class AuthenticationError(Exception):
    """Auth token is missing, forged or expired."""


###############################################################################
# Data model
###############################################################################
@dataclass(frozen=True)
class JournalEntry:
    date: str
    last_modified: str
    markdown: str

    def to_json(self) -> dict:
        return {
            "date": self.date,
            "lastModified": self.last_modified,
            "markdown": self.markdown,
        }


@dataclass(frozen=True)
class AuthoredEntry:
    """A JournalEntry tagged with the user who published it."""

    author: str
    date: str
    last_modified: str
    markdown: str


class RecentFeedItem(TypedDict):
    author: str
    date: str
    markdown: str


@dataclass(frozen=True)
class PageWindow:
    start: int
    limit: int


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def timestamp() -> str:
    """`utc_now()` as RFC 3339, e.g. 2019-05-24T12:00:00Z."""
    return utc_now().strftime(TIMESTAMP_FMT)


def is_valid_entry_date(value) -> bool:
    """True for a real calendar date written exactly as YYYY-MM-DD."""
    if not isinstance(value, str) or not DATE_RE.fullmatch(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


###############################################################################
# Datastore
###############################################################################
class Datastore(Protocol):
    """Where entries and drafts live. Everything is keyed by (username, date)."""

    def users(self) -> list[str]: ...

    def get_entries(self, username: str) -> list[JournalEntry]: ...

    def get_draft(self, username: str, date_: str) -> JournalEntry: ...

    def insert_entry(self, username: str, entry: JournalEntry) -> None: ...

    def insert_draft(self, username: str, entry: JournalEntry) -> None: ...


class SqliteDatastore:
    """
    Entries + drafts in a single sqlite file.

    Every call opens (and closes) its own connection, so one instance can be
    shared by the worker threads of `merge_entries`.
    """

    def __init__(self, path: str):
        self.path = path

    def _connect(self) -> sqlite3.Connection:
        db = sqlite3.connect(self.path)
        db.row_factory = sqlite3.Row
        return db

    def init_schema(self) -> None:
        with closing(self._connect()) as db:
            db.executescript(SCHEMA)
            db.commit()

    def users(self) -> list[str]:
        with closing(self._connect()) as db:
            rows = db.execute(
                "SELECT DISTINCT username FROM entry ORDER BY username"
            ).fetchall()
        return [r["username"] for r in rows]

    def get_entries(self, username: str) -> list[JournalEntry]:
        with closing(self._connect()) as db:
            rows = db.execute(
                """SELECT date, last_modified, markdown
                     FROM entry
                    WHERE username=?
                    ORDER BY date""",
                (username,),
            ).fetchall()
        return [_entry_from_row(r) for r in rows]

    def get_draft(self, username: str, date_: str) -> JournalEntry:
        with closing(self._connect()) as db:
            row = db.execute(
                "SELECT date, last_modified, markdown FROM draft WHERE username=? AND date=?",
                (username, date_),
            ).fetchone()
        if row is None:
            raise DraftNotFoundError(username, date_)
        return _entry_from_row(row)

    def insert_entry(self, username: str, entry: JournalEntry) -> None:
        self._upsert("entry", username, entry)

    def insert_draft(self, username: str, entry: JournalEntry) -> None:
        self._upsert("draft", username, entry)

    def _upsert(self, table: str, username: str, entry: JournalEntry) -> None:
        with closing(self._connect()) as db:
            db.execute(
                f"INSERT INTO {table} (username, date, last_modified, markdown) "
                "VALUES (?,?,?,?) "
                "ON CONFLICT(username, date) DO UPDATE SET "
                "last_modified=excluded.last_modified, markdown=excluded.markdown",
                (username, entry.date, entry.last_modified, entry.markdown),
            )
            db.commit()


def _entry_from_row(row) -> JournalEntry:
    return JournalEntry(
        date=row["date"], last_modified=row["last_modified"], markdown=row["markdown"]
    )


def get_datastore() -> Datastore:
    ds = app.config.get("DATASTORE")
    return ds if ds is not None else SqliteDatastore(app.config["DATABASE"])


def init_db():
    SqliteDatastore(app.config["DATABASE"]).init_schema()


###############################################################################
# Authentication
###############################################################################
class Authenticator(Protocol):
    def user_from_auth_token(self, token: str) -> str: ...


class SignedTokenAuthenticator:
    """Auth tokens are usernames signed (and timestamped) with the app secret."""

    def __init__(self, secret_key: str, *, max_age: int = AUTH_TOKEN_MAX_AGE):
        self.signer = TimestampSigner(secret_key, salt="auth-token")
        self.max_age = max_age

    def issue(self, username: str) -> str:
        return self.signer.sign(username).decode()

    def user_from_auth_token(self, token: str) -> str:
        try:
            username = self.signer.unsign(token, max_age=self.max_age).decode()
        except SignatureExpired as exc:
            raise AuthenticationError("auth token expired") from exc
        except BadSignature as exc:
            raise AuthenticationError("auth token has a bad signature") from exc
        if not USERNAME_RE.fullmatch(username):
            raise AuthenticationError("auth token names an invalid user")
        return username


def get_authenticator() -> Authenticator:
    auth = app.config.get("AUTHENTICATOR")
    if auth is not None:
        return auth
    return SignedTokenAuthenticator(
        app.config["SECRET_KEY"], max_age=app.config["AUTH_TOKEN_MAX_AGE"]
    )


def issue_auth_token(username: str) -> str:
    return SignedTokenAuthenticator(app.config["SECRET_KEY"]).issue(username)


def logged_in_user() -> str | None:
    token = request.cookies.get(app.config["AUTH_COOKIE_NAME"], "")
    if not token:
        return None
    try:
        return get_authenticator().user_from_auth_token(token)
    except AuthenticationError as exc:
        app.logger.info("Rejected auth token: %s", exc)
        return None


def login_required(message: str = "You must log in") -> str:
    username = logged_in_user()
    if username is None:
        abort(403, message)
    return username


###############################################################################
# Security headers + CSRF
###############################################################################
SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


def content_security_policy() -> str:
    directives = {k: list(v) for k, v in CSP_DIRECTIVES.items()}
    directives["script-src"] += app.config.get("CSP_EXTRA_SCRIPT_SRC") or []
    directives["style-src"] += app.config.get("CSP_EXTRA_STYLE_SRC") or []
    return "; ".join(f"{name} {' '.join(srcs)}" for name, srcs in directives.items())


@app.before_request
def csrf_protect():
    # ➊ read-only verbs ⇒ always allowed
    if request.method in SAFE_METHODS:
        return

    # ➋ anonymous requests carry no ambient credentials
    if not request.cookies.get(app.config["AUTH_COOKIE_NAME"]):
        return

    # ➌ cookie-authenticated writes must echo the CSRF cookie in a header
    token = request.cookies.get(CSRF_COOKIE_NAME, "")
    sent = request.headers.get(CSRF_HEADER_NAME, "")
    if not token or not secrets.compare_digest(token.encode(), sent.encode()):
        app.logger.warning("CSRF check failed for %s %s", request.method, request.path)
        abort(403, "Invalid CSRF token")


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "Content-Security-Policy": content_security_policy(),
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    if CSRF_COOKIE_NAME not in request.cookies:
        resp.set_cookie(
            CSRF_COOKIE_NAME,
            secrets.token_hex(16),
            samesite="Strict",
            secure=request.is_secure,
        )
    return resp


def json_response(payload, status: int = 200):
    try:
        body = json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"Failed to encode response: {exc}") from exc
    return app.response_class(body, status=status, mimetype="application/json")


def text_response(body: str, status: int):
    return app.response_class(body, status=status, mimetype="text/plain")


###############################################################################
# Recent entries feed
###############################################################################
def is_relevant(entry: JournalEntry, min_length: int = RECENT_MIN_LENGTH) -> bool:
    """Low-effort and test posts (fewer than *min_length* characters) are dropped."""
    return len(entry.markdown) >= min_length


def merge_entries(
    usernames: Iterable[str],
    datastore: Datastore,
    *,
    min_length: int = RECENT_MIN_LENGTH,
    workers: int = 1,
) -> list[AuthoredEntry]:
    """
    Pull every user's entries and flatten them into one list of AuthoredEntry.

    • One failed fetch fails the whole merge (`AggregationError`); a feed
      with a user silently missing is never returned.
    • With *workers* > 1 the fetches run on a thread pool. `Executor.map`
      yields in username order, so the result is the same list the
      sequential loop builds.
    • Order is by username, then by the datastore's order. Callers sort.
    """
    usernames = list(usernames)

    def fetch(username: str) -> list[JournalEntry]:
        try:
            return datastore.get_entries(username)
        except Exception as exc:
            raise AggregationError(username, exc) from exc

    if workers > 1 and len(usernames) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            fetched = list(pool.map(fetch, usernames))
    else:
        fetched = [fetch(u) for u in usernames]

    return [
        AuthoredEntry(
            author=username,
            date=e.date,
            last_modified=e.last_modified,
            markdown=e.markdown,
        )
        for username, entries in zip(usernames, fetched)
        for e in entries
        if is_relevant(e, min_length)
    ]


def sort_entries(entries: Iterable[AuthoredEntry]) -> list[AuthoredEntry]:
    """Newest date first; within a date, most recently edited first."""
    # ISO-8601 strings compare correctly as plain strings.
    return sorted(entries, key=lambda e: (e.date, e.last_modified), reverse=True)


def _parse_int(raw: str | None) -> int | None:
    if raw is None or not INT_RE.fullmatch(raw):
        return None
    try:
        return int(raw)
    except ValueError:  # absurdly long digit strings
        return None


def parse_page_window(start: str | None, limit: str | None) -> PageWindow:
    """
    Validate the ``start``/``limit`` query parameters.

    start ≥ 0 and limit ≥ 1, both plain base-10 integers; anything else
    raises `ValidationError` naming the offending parameter.
    """
    start_n = _parse_int(start)
    if start_n is None or start_n < 0:
        raise ValidationError("invalid start")
    limit_n = _parse_int(limit)
    if limit_n is None or limit_n < 1:
        raise ValidationError("invalid limit")
    return PageWindow(start=start_n, limit=limit_n)


def slice_window(entries: Sequence, page: PageWindow) -> list:
    return list(entries[page.start : page.start + page.limit])


def window(entries: Sequence, start: str, limit: str) -> list:
    """`entries[start:start+limit]` after validating both raw parameters."""
    return slice_window(entries, parse_page_window(start, limit))


def present(entries: Iterable[AuthoredEntry]) -> list[RecentFeedItem]:
    return [{"author": e.author, "date": e.date, "markdown": e.markdown} for e in entries]


def recent_entries(
    datastore: Datastore,
    page: PageWindow,
    *,
    min_length: int = RECENT_MIN_LENGTH,
    workers: int = 1,
) -> list[RecentFeedItem]:
    try:
        usernames = datastore.users()
    except Exception as exc:
        raise AggregationError(None, exc) from exc

    merged = merge_entries(usernames, datastore, min_length=min_length, workers=workers)
    return present(slice_window(sort_entries(merged), page))


@app.route("/api/recentEntries")
def recent_entries_get():
    # parameters are checked before any datastore work
    page = parse_page_window(
        request.args.get("start", "0"),
        request.args.get("limit", str(app.config["RECENT_DEFAULT_LIMIT"])),
    )
    items = recent_entries(
        get_datastore(),
        page,
        min_length=int(app.config["RECENT_MIN_LENGTH"]),
        workers=int(app.config["RECENT_FETCH_WORKERS"]),
    )
    return json_response(items)


###############################################################################
# Entries + drafts
###############################################################################
def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        app.logger.warning("Failed to decode request body for %s", request.path)
        abort(400, "Failed to decode request")
    return data


def _entry_content(data: dict) -> str:
    content = data.get("entryContent", "")
    if not isinstance(content, str):
        abort(400, "Failed to decode request")
    return content


def _require_date(value) -> str:
    if not is_valid_entry_date(value):
        app.logger.warning("Invalid date: %r", value)
        abort(400, "Invalid date")
    return value


@app.route("/api/entries/<username>")
def entries_get(username):
    if not USERNAME_RE.fullmatch(username):
        app.logger.warning("Invalid username in request path: %r", username)
        abort(400, "Invalid username")

    try:
        entries = get_datastore().get_entries(username)
    except Exception:
        app.logger.exception("Failed to retrieve entries for %s", username)
        abort(500, f"Failed to retrieve entries for {username}")
    return json_response([e.to_json() for e in entries])


@app.route("/api/entry", methods=["POST"])
def entry_post():
    """
    Publish (or re-publish) the update for one date.

    The same content is written as the user's draft so the editor picks up
    where the published version left off.
    """
    username = login_required("You must log in to edit a journal entry")
    data = _json_body()
    entry_date = _require_date(data.get("date"))

    entry = JournalEntry(
        date=entry_date, last_modified=timestamp(), markdown=_entry_content(data)
    )
    ds = get_datastore()
    try:
        ds.insert_draft(username, entry)
        ds.insert_entry(username, entry)
    except Exception:
        app.logger.exception("Failed to insert journal entry for %s", username)
        abort(500, "Failed to insert entry")

    return {"ok": True, "path": f"/{username}/{entry_date}"}


@app.route("/api/draft/<date_str>", methods=["GET"])
def draft_get(date_str):
    username = login_required("You must log in to retrieve a draft entry")
    _require_date(date_str)

    try:
        draft = get_datastore().get_draft(username, date_str)
    except DraftNotFoundError:
        abort(404, "Draft not found")
    except Exception:
        app.logger.exception("Failed to retrieve draft for %s/%s", username, date_str)
        abort(500, "Failed to retrieve draft")
    return json_response(draft.to_json())


@app.route("/api/draft/<date_str>", methods=["POST"])
def draft_post(date_str):
    username = login_required("You must log in to save a draft")
    _require_date(date_str)
    data = _json_body()

    draft = JournalEntry(
        date=date_str, last_modified=timestamp(), markdown=_entry_content(data)
    )
    try:
        get_datastore().insert_draft(username, draft)
    except Exception:
        app.logger.exception("Failed to update draft for %s/%s", username, date_str)
        abort(500, "Failed to save draft")
    return {"ok": True}


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(ValidationError)
def validation_error(exc):
    app.logger.warning("Rejected %s: %s", request.full_path, exc)
    return text_response(str(exc), 400)


@app.errorhandler(AggregationError)
def aggregation_error(exc):
    app.logger.error(
        "Failed to retrieve entries for %s: %s",
        exc.username if exc.username is not None else "<all users>",
        exc.cause,
    )
    # storage details stay in the log
    return text_response("Failed to retrieve entries", 500)


@app.errorhandler(404)
def not_found(exc):
    if exc.description and exc.description != exc.__class__.description:
        return text_response(exc.description, 404)
    return text_response("Page not found", 404)


@app.errorhandler(HTTPException)
def http_error(exc):
    return text_response(exc.description or exc.name, exc.code or 500)


@app.errorhandler(500)
def internal_error(exc):
    """
    Unhandled exceptions (EncodingError included) end up here once Flask has
    logged the traceback. Explicit `abort(500, msg)` keeps its message.
    """
    if getattr(exc, "original_exception", None) is not None:
        return text_response("Internal Server Error", 500)
    return text_response(exc.description or "Internal Server Error", 500)


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the sqlite schema (no-op if it already exists)."""
    init_db()
    click.secho("\n✅  Database ready.", fg="green")
    click.echo(f"\n{app.config['DATABASE']}\n")


@app.cli.command("token")
@click.option("--username", prompt=True, help="User the token logs in as")
def cli_token(username: str):
    """Print an auth token for USERNAME."""
    username = username.strip()
    if not USERNAME_RE.fullmatch(username):
        raise click.BadParameter(
            "letters, digits, '_' and '-' only (max 64)", param_hint="--username"
        )
    token = issue_auth_token(username)

    click.secho(f"\n🔑  Auth token for {username}.\n", fg="yellow")
    click.echo(f"{token}\n")
    click.echo(f"Send it as the '{app.config['AUTH_COOKIE_NAME']}' cookie.")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)

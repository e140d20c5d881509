#!/usr/bin/env python3
# rm_issue_viewer: Terminal Redmine issue viewer backed by a local SQLite cache
#
# Hotkeys
#   tab   switch between the projects and issues pane
#   j/k   move the cursor (arrows work too)
#   enter select project (projects pane) / open issue detail (issues pane)
#   /     filter the focused pane (Enter keeps, Esc clears)
#   s     cycle issue sort order (Recent, Status, Priority)
#   m     toggle "assigned to me"
#   g     toggle grouping issues by status; space collapses the group at cursor
#   r     sync issues of the selected project (one page per tick)
#   R     sync the project list (plus recent activity and users)
#   n     new issue in the selected project
#   x     mark/unmark the issue at cursor; b bulk-edits the marked issues
#   c     comment on the issue open in the detail popup; e edits it
#   q     quit (or close the popup)
#
# Forms: tab/shift-tab move between fields, typing edits (or searches a
# dropdown), Enter submits, Esc cancels.
#
# Config (YAML)
#   redmine_url: https://redmine.example.com
#   api_key: <your key>        # or REDMINE_API_KEY in the environment / .env
#   exclude_subprojects: true
#
# Environment
# - REDMINE_URL / REDMINE_API_KEY override the config file
# - MOCK_FETCH=1 seeds an empty cache with demo data (offline demo)

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import json
import os
import sqlite3
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.application.current import get_app
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, VSplit, Layout, Window
from prompt_toolkit.layout.containers import ConditionalContainer, Float, FloatContainer
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth
from prompt_toolkit.widgets import Frame
import logging
from logging.handlers import RotatingFileHandler


LOGGER_NAME = 'rm_issue_viewer'
DEFAULT_CONFIG_PATH = os.path.expanduser("~/.config/rm_issue_viewer/config.yml")
DEFAULT_DB_PATH = os.path.expanduser("~/.rm_issues.db")
DEFAULT_STATE_PATH = os.path.expanduser("~/.rm_issues.ui.json")
DEFAULT_LOG_PATH = os.path.expanduser("~/.rm_issue_viewer.log")
PAGE_SIZE = 100
# Redmine caps `limit` at this on stock installs
MAX_PAGE_SIZE = 100
RECENT_ISSUE_COUNT = 100

logger = logging.getLogger(LOGGER_NAME)


# -----------------------------
# Config
# -----------------------------
@dataclass
class Config:
    redmine_url: str = ""
    api_key: str = ""
    exclude_subprojects: bool = True
    page_size: int = PAGE_SIZE
    recent_issue_count: int = RECENT_ISSUE_COUNT
    request_timeout: float = 30.0

    def is_configured(self) -> bool:
        return bool(self.redmine_url.strip()) and bool(self.api_key.strip())


def load_config(path: str) -> Config:
    """Read the YAML config; a missing file yields defaults so the cache stays browsable."""
    raw: object = {}
    if path and os.path.isfile(path):
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config: expected a mapping in {path}")
    cfg = Config(
        redmine_url=str(raw.get("redmine_url") or ""),
        api_key=str(raw.get("api_key") or ""),
        exclude_subprojects=bool(raw.get("exclude_subprojects", True)),
        page_size=int(raw.get("page_size") or PAGE_SIZE),
        recent_issue_count=int(raw.get("recent_issue_count") or RECENT_ISSUE_COUNT),
        request_timeout=float(raw.get("request_timeout") or 30.0),
    )
    if cfg.page_size <= 0:
        raise ValueError("Config: 'page_size' must be positive.")
    if cfg.page_size > MAX_PAGE_SIZE:
        logger.warning("page_size %d exceeds the server limit; using %d", cfg.page_size, MAX_PAGE_SIZE)
        cfg.page_size = MAX_PAGE_SIZE
    env_url = os.environ.get("REDMINE_URL")
    if env_url:
        cfg.redmine_url = env_url
    env_key = os.environ.get("REDMINE_API_KEY") or (None if cfg.api_key else load_dotenv_api_key())
    if env_key:
        cfg.api_key = env_key
    return cfg


def load_dotenv_api_key() -> Optional[str]:
    """Load REDMINE_API_KEY or API_KEY from a .env file (current dir or script dir) if present."""
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    k, v = line.split('=', 1)
                    k = k.strip()
                    v = v.strip().strip('"').strip("'")
                    if k in ("REDMINE_API_KEY", "API_KEY") and v:
                        return v
        except OSError:
            logger.warning("Unable to read %s", path, exc_info=True)
            continue
    return None


def setup_logging(log_level: str = 'ERROR', log_path: Optional[str] = None) -> logging.Logger:
    log = logging.getLogger(LOGGER_NAME)
    # Always reset handlers so CLI --log-level reliably controls file output.
    for h in list(log.handlers):
        log.removeHandler(h)
        h.close()
    log.setLevel(logging.DEBUG)
    path = log_path or DEFAULT_LOG_PATH
    directory = os.path.dirname(path)
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
    fh = RotatingFileHandler(path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    fh.setLevel(getattr(logging, str(log_level).upper(), logging.ERROR))
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    log.addHandler(fh)
    return log


# -----------------------------
# Errors
# -----------------------------
class CacheError(Exception):
    """Local cache failure (storage engine error or malformed stored value)."""


class RemoteError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, kind: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.kind = kind

    def user_message(self) -> str:
        if self.kind == 'timeout':
            return "Request timed out. Please check your connection."
        if self.kind == 'connection':
            return "Cannot connect to server. Please check your network."
        if self.status == 401:
            return "Authentication failed. Please check your API key."
        if self.status == 403:
            return "Access denied. You may not have permission to perform this action."
        if self.status == 404:
            return "Resource not found."
        if self.status == 422:
            return f"Validation failed: {self}"
        return str(self)


class SyncError(Exception):
    """A remote failure that aborted a sync cycle."""

    def __init__(self, operation: str, cause: Exception):
        super().__init__(f"Failed to load {operation}: {cause}")
        self.operation = operation
        self.cause = cause


class ValidationError(ValueError):
    pass


# -----------------------------
# Models
# -----------------------------
EPOCH_TS = "1970-01-01T00:00:00+00:00"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0)


def format_ts(value: Optional[dt.datetime]) -> Optional[str]:
    # Second precision in UTC keeps lexical order equal to chronological order.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).replace(microsecond=0).isoformat()


def parse_ts(raw: Optional[str]) -> Optional[dt.datetime]:
    if raw is None or not str(raw).strip():
        return None
    text = str(raw).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    value = dt.datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


@dataclass
class IdName:
    id: int
    name: str = ""


@dataclass
class JournalDetail:
    property: str  # 'attr' | 'cf' | 'attachment' | 'relation'
    name: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None


@dataclass
class Journal:
    id: int
    user: IdName
    created_on: dt.datetime
    notes: Optional[str] = None
    private_notes: bool = False
    details: List[JournalDetail] = field(default_factory=list)


@dataclass
class Project:
    id: int
    name: str
    identifier: str
    description: Optional[str] = None
    status: Optional[int] = None
    parent: Optional[IdName] = None
    created_on: Optional[dt.datetime] = None
    updated_on: Optional[dt.datetime] = None
    last_issue_activity: Optional[dt.datetime] = None  # maintained by the cache
    last_issues_sync: Optional[dt.datetime] = None     # maintained by the cache


@dataclass
class Issue:
    id: int
    project: IdName
    tracker: IdName
    status: IdName
    priority: IdName
    author: IdName
    subject: str
    created_on: dt.datetime
    updated_on: dt.datetime
    assigned_to: Optional[IdName] = None
    description: Optional[str] = None
    start_date: Optional[str] = None
    due_date: Optional[str] = None
    done_ratio: Optional[int] = None
    estimated_hours: Optional[float] = None
    category: Optional[IdName] = None
    journals: List[Journal] = field(default_factory=list)
    custom_fields: List[Dict[str, object]] = field(default_factory=list)
    attachments: List[Dict[str, object]] = field(default_factory=list)


@dataclass
class User:
    id: int
    login: str
    firstname: str
    lastname: str
    mail: Optional[str] = None

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.firstname, self.lastname) if p) or self.login


@dataclass
class Page:
    items: List
    total_count: Optional[int] = None
    offset: int = 0
    limit: int = 0


@dataclass
class ProjectDetail:
    project: Project
    trackers: List[IdName] = field(default_factory=list)
    categories: List[IdName] = field(default_factory=list)


class IssueSortOrder(Enum):
    UPDATED_DESC = "updated_desc"
    STATUS_ASC = "status_asc"
    STATUS_DESC = "status_desc"
    PRIORITY_ASC = "priority_asc"
    PRIORITY_DESC = "priority_desc"

    def next(self) -> "IssueSortOrder":
        members = list(IssueSortOrder)
        return members[(members.index(self) + 1) % len(members)]

    @property
    def label(self) -> str:
        return _SORT_LABELS[self]


_SORT_LABELS = {
    IssueSortOrder.UPDATED_DESC: "Recent",
    IssueSortOrder.STATUS_ASC: "Status ↑",
    IssueSortOrder.STATUS_DESC: "Status ↓",
    IssueSortOrder.PRIORITY_ASC: "Priority ↑",
    IssueSortOrder.PRIORITY_DESC: "Priority ↓",
}

# id breaks ties in the same direction so every *_DESC order is the exact reverse of its *_ASC
_SORT_SQL = {
    IssueSortOrder.UPDATED_DESC: "updated_on DESC, id DESC",
    IssueSortOrder.STATUS_ASC: "status_name ASC, id ASC",
    IssueSortOrder.STATUS_DESC: "status_name DESC, id DESC",
    IssueSortOrder.PRIORITY_ASC: "priority_id ASC, id ASC",
    IssueSortOrder.PRIORITY_DESC: "priority_id DESC, id DESC",
}


def _id_name(raw: object) -> Optional[IdName]:
    if not isinstance(raw, dict) or raw.get('id') is None:
        return None
    return IdName(int(raw['id']), str(raw.get('name') or ''))


def _required_id_name(raw: Dict, key: str) -> IdName:
    value = _id_name(raw.get(key))
    if value is None:
        raise ValueError(f"missing '{key}'")
    return value


def journal_from_api(raw: Dict) -> Journal:
    details = []
    for d in raw.get('details') or []:
        if not isinstance(d, dict):
            continue
        old_val = d.get('old_value')
        new_val = d.get('new_value')
        details.append(JournalDetail(
            property=str(d.get('property') or ''),
            name=str(d.get('name') or ''),
            old_value=None if old_val is None else str(old_val),
            new_value=None if new_val is None else str(new_val),
        ))
    return Journal(
        id=int(raw['id']),
        user=_id_name(raw.get('user')) or IdName(0, ''),
        created_on=parse_ts(raw['created_on']),
        notes=raw.get('notes') or None,
        private_notes=bool(raw.get('private_notes', False)),
        details=details,
    )


def project_from_api(raw: Dict) -> Project:
    return Project(
        id=int(raw['id']),
        name=str(raw.get('name') or ''),
        identifier=str(raw.get('identifier') or ''),
        description=raw.get('description') or None,
        status=raw.get('status'),
        parent=_id_name(raw.get('parent')),
        created_on=parse_ts(raw.get('created_on')),
        updated_on=parse_ts(raw.get('updated_on')),
    )


def _custom_field_value(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(str(v) for v in value if isinstance(v, str))
    return str(value)


def issue_from_api(raw: Dict) -> Issue:
    done_ratio = raw.get('done_ratio')
    estimated = raw.get('estimated_hours')
    return Issue(
        id=int(raw['id']),
        project=_required_id_name(raw, 'project'),
        tracker=_required_id_name(raw, 'tracker'),
        status=_required_id_name(raw, 'status'),
        priority=_required_id_name(raw, 'priority'),
        author=_required_id_name(raw, 'author'),
        subject=str(raw.get('subject') or ''),
        created_on=parse_ts(raw['created_on']),
        updated_on=parse_ts(raw['updated_on']),
        assigned_to=_id_name(raw.get('assigned_to')),
        description=raw.get('description') or None,
        start_date=raw.get('start_date') or None,
        due_date=raw.get('due_date') or None,
        done_ratio=None if done_ratio is None else int(done_ratio),
        estimated_hours=None if estimated is None else float(estimated),
        category=_id_name(raw.get('category')),
        journals=[journal_from_api(j) for j in raw.get('journals') or [] if isinstance(j, dict)],
        custom_fields=[
            {'id': cf.get('id'), 'name': cf.get('name') or '', 'value': _custom_field_value(cf.get('value'))}
            for cf in raw.get('custom_fields') or [] if isinstance(cf, dict)
        ],
        attachments=[a for a in raw.get('attachments') or [] if isinstance(a, dict)],
    )


def user_from_api(raw: Dict) -> User:
    return User(
        id=int(raw['id']),
        login=str(raw.get('login') or ''),
        firstname=str(raw.get('firstname') or ''),
        lastname=str(raw.get('lastname') or ''),
        mail=raw.get('mail') or None,
    )


# -----------------------------
# DB
# -----------------------------
PROJECTS_SYNC_KEY = 'projects_last_synced'
USERS_SYNC_KEY = 'users_last_synced'


def _casefold(value: Optional[str]) -> Optional[str]:
    return None if value is None else str(value).casefold()


def _like_pattern(text: str) -> str:
    escaped = text.casefold().replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


class IssueCache:
    """SQLite mirror of Redmine projects, issues, journals and users.

    Every write is a single transaction: all rows of one call land, or none do.
    """

    CREATE_SQL = (
        """
        CREATE TABLE IF NOT EXISTS projects (
            id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            identifier TEXT NOT NULL,
            description TEXT,
            status INTEGER,
            created_on TEXT,
            updated_on TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS issues (
            id INTEGER PRIMARY KEY,
            project_id INTEGER NOT NULL,
            tracker_id INTEGER NOT NULL,
            tracker_name TEXT NOT NULL,
            status_id INTEGER NOT NULL,
            status_name TEXT NOT NULL,
            priority_id INTEGER NOT NULL,
            priority_name TEXT NOT NULL,
            author_id INTEGER NOT NULL,
            author_name TEXT NOT NULL,
            assigned_to_id INTEGER,
            assigned_to_name TEXT,
            subject TEXT NOT NULL,
            description TEXT,
            created_on TEXT NOT NULL,
            updated_on TEXT NOT NULL,
            due_date TEXT,
            done_ratio INTEGER
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY,
            login TEXT NOT NULL,
            firstname TEXT NOT NULL,
            lastname TEXT NOT NULL,
            mail TEXT,
            cached_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS journals (
            id INTEGER PRIMARY KEY,
            issue_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            user_name TEXT NOT NULL,
            notes TEXT,
            created_on TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS journal_details (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            journal_id INTEGER NOT NULL,
            property TEXT NOT NULL,
            name TEXT NOT NULL,
            old_value TEXT,
            new_value TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """,
    )
    # Columns added after the first release; appended as nullable columns when missing.
    ADDED_COLUMNS: Dict[str, List[Tuple[str, str]]] = {
        'projects': [
            ('last_issue_activity', 'TEXT'),
            ('last_issues_sync', 'TEXT'),
            ('parent_id', 'INTEGER'),
            ('parent_name', 'TEXT'),
        ],
        'journals': [
            ('private_notes', 'INTEGER'),
        ],
    }
    INDEXES = (
        ("idx_projects_name", "projects(name)"),
        ("idx_projects_identifier", "projects(identifier)"),
        ("idx_projects_updated", "projects(updated_on DESC)"),
        ("idx_projects_activity", "projects(last_issue_activity DESC)"),
        ("idx_issues_project", "issues(project_id)"),
        ("idx_issues_updated", "issues(updated_on DESC)"),
        ("idx_issues_status", "issues(status_name)"),
        ("idx_issues_priority", "issues(priority_id)"),
        ("idx_issues_assigned", "issues(assigned_to_id)"),
        ("idx_issues_subject", "issues(subject)"),
        ("idx_issues_created", "issues(created_on DESC)"),
        ("idx_issues_project_updated", "issues(project_id, updated_on DESC)"),
        ("idx_issues_project_assigned", "issues(project_id, assigned_to_id)"),
        ("idx_journals_issue", "journals(issue_id)"),
        ("idx_journal_details_journal", "journal_details(journal_id)"),
        ("idx_users_login", "users(login)"),
    )
    ISSUE_COLUMNS = (
        "id, project_id, tracker_id, tracker_name, status_id, status_name, "
        "priority_id, priority_name, author_id, author_name, "
        "assigned_to_id, assigned_to_name, subject, description, "
        "created_on, updated_on, due_date, done_ratio"
    )
    PROJECT_COLUMNS = (
        "id, name, identifier, description, status, parent_id, parent_name, "
        "created_on, updated_on, last_issue_activity, last_issues_sync"
    )

    def __init__(self, path: str):
        if path != ':memory:':
            directory = os.path.dirname(os.path.abspath(path))
            if directory and not os.path.isdir(directory):
                os.makedirs(directory, exist_ok=True)
        try:
            # Autocommit mode; batches open their own explicit transactions.
            self.conn = sqlite3.connect(path, isolation_level=None)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.create_function("casefold", 1, _casefold, deterministic=True)
            self._migrate_if_needed()
        except sqlite3.Error as exc:
            raise CacheError(f"Failed to open cache {path}: {exc}") from exc

    def close(self) -> None:
        self.conn.close()

    def _cols(self, table: str) -> List[str]:
        return [r[1] for r in self.conn.execute(f"PRAGMA table_info({table})").fetchall()]

    def _migrate_if_needed(self) -> None:
        for sql in self.CREATE_SQL:
            self.conn.execute(sql)
        for table, columns in self.ADDED_COLUMNS.items():
            existing = set(self._cols(table))
            for name, col_type in columns:
                if name not in existing:
                    self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {col_type}")
        for name, target in self.INDEXES:
            self.conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON {target}")

    @contextmanager
    def _transaction(self, what: str) -> Iterator[sqlite3.Cursor]:
        cur = self.conn.cursor()
        try:
            cur.execute("BEGIN")
            yield cur
            cur.execute("COMMIT")
        except Exception as exc:
            if self.conn.in_transaction:
                self.conn.rollback()
            if isinstance(exc, (sqlite3.Error, ValueError)):
                raise CacheError(f"Failed to store {what}: {exc}") from exc
            raise

    def _read(self, sql: str, params: Sequence = ()) -> List[tuple]:
        try:
            return self.conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise CacheError(f"Cache query failed: {exc}") from exc

    @staticmethod
    def _stored_ts(raw: Optional[str]) -> Optional[dt.datetime]:
        try:
            return parse_ts(raw)
        except ValueError as exc:
            raise CacheError(f"Malformed timestamp in cache: {raw!r}") from exc

    @staticmethod
    def _lenient_ts(raw: Optional[str]) -> Optional[dt.datetime]:
        try:
            return parse_ts(raw)
        except ValueError:
            logger.debug("Ignoring malformed project timestamp %r", raw)
            return None

    # --- Projects ---
    def upsert_projects(self, projects: Sequence[Project]) -> None:
        with self._transaction("projects") as cur:
            for p in projects:
                existing = cur.execute(
                    "SELECT last_issue_activity, last_issues_sync FROM projects WHERE id = ?",
                    (p.id,),
                ).fetchone()
                keep_activity, keep_sync = existing if existing else (None, None)
                cur.execute(
                    f"INSERT OR REPLACE INTO projects ({self.PROJECT_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        p.id,
                        p.name,
                        p.identifier,
                        p.description,
                        p.status,
                        p.parent.id if p.parent else None,
                        p.parent.name if p.parent else None,
                        format_ts(p.created_on),
                        format_ts(p.updated_on),
                        keep_activity,
                        keep_sync,
                    ),
                )
            cur.execute(
                "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                (PROJECTS_SYNC_KEY, format_ts(utcnow())),
            )
            # Projects without cached issues keep whatever activity they already had.
            cur.execute(
                """
                UPDATE projects SET last_issue_activity = (
                    SELECT MAX(updated_on) FROM issues WHERE issues.project_id = projects.id
                )
                WHERE EXISTS (SELECT 1 FROM issues WHERE issues.project_id = projects.id)
                """
            )

    def _project_from_row(self, r: tuple) -> Project:
        return Project(
            id=r[0],
            name=r[1],
            identifier=r[2],
            description=r[3],
            status=r[4],
            parent=IdName(r[5], r[6] or '') if r[5] is not None else None,
            created_on=self._lenient_ts(r[7]),
            updated_on=self._lenient_ts(r[8]),
            last_issue_activity=self._lenient_ts(r[9]),
            last_issues_sync=self._lenient_ts(r[10]),
        )

    def query_projects(self, text_filter: Optional[str] = None) -> List[Project]:
        sql = f"SELECT {self.PROJECT_COLUMNS} FROM projects"
        params: List[object] = []
        if text_filter:
            sql += (
                " WHERE (casefold(name) LIKE ? ESCAPE '\\'"
                " OR casefold(identifier) LIKE ? ESCAPE '\\'"
                " OR casefold(description) LIKE ? ESCAPE '\\')"
            )
            params.extend([_like_pattern(text_filter)] * 3)
        sql += (
            " ORDER BY COALESCE(last_issue_activity, updated_on, created_on, ?) DESC, id ASC"
        )
        params.append(EPOCH_TS)
        return [self._project_from_row(r) for r in self._read(sql, params)]

    def fetch_project(self, project_id: int) -> Optional[Project]:
        rows = self._read(f"SELECT {self.PROJECT_COLUMNS} FROM projects WHERE id = ?", (project_id,))
        return self._project_from_row(rows[0]) if rows else None

    def project_name(self, project_id: int) -> Optional[str]:
        rows = self._read("SELECT name FROM projects WHERE id = ?", (project_id,))
        return rows[0][0] if rows else None

    def count_projects(self) -> int:
        return int(self._read("SELECT COUNT(*) FROM projects")[0][0])

    def touch_project_activity(self, project_id: int, timestamp: dt.datetime) -> None:
        with self._transaction("project activity") as cur:
            cur.execute(
                "UPDATE projects SET last_issue_activity = ? WHERE id = ?",
                (format_ts(timestamp), project_id),
            )

    # --- Issues ---
    @staticmethod
    def _issue_params(i: Issue) -> tuple:
        return (
            i.id,
            i.project.id,
            i.tracker.id,
            i.tracker.name,
            i.status.id,
            i.status.name,
            i.priority.id,
            i.priority.name,
            i.author.id,
            i.author.name,
            i.assigned_to.id if i.assigned_to else None,
            i.assigned_to.name if i.assigned_to else None,
            i.subject,
            i.description,
            format_ts(i.created_on),
            format_ts(i.updated_on),
            i.due_date,
            i.done_ratio,
        )

    def _insert_issue(self, cur: sqlite3.Cursor, issue: Issue) -> None:
        cur.execute(
            f"INSERT OR REPLACE INTO issues ({self.ISSUE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            self._issue_params(issue),
        )

    def upsert_issues(self, issues: Sequence[Issue]) -> None:
        if not issues:
            return
        project_ids = sorted({i.project.id for i in issues})
        now = format_ts(utcnow())
        with self._transaction("issues") as cur:
            for issue in issues:
                self._insert_issue(cur, issue)
            for pid in project_ids:
                cur.execute(
                    """
                    UPDATE projects SET
                        last_issue_activity = (SELECT MAX(updated_on) FROM issues WHERE project_id = ?),
                        last_issues_sync = ?
                    WHERE id = ?
                    """,
                    (pid, now, pid),
                )

    def _issue_from_row(self, r: tuple) -> Issue:
        return Issue(
            id=r[0],
            project=IdName(r[1], ''),
            tracker=IdName(r[2], r[3]),
            status=IdName(r[4], r[5]),
            priority=IdName(r[6], r[7]),
            author=IdName(r[8], r[9]),
            assigned_to=IdName(r[10], r[11] or '') if r[10] is not None else None,
            subject=r[12],
            description=r[13],
            created_on=self._stored_ts(r[14]),
            updated_on=self._stored_ts(r[15]),
            due_date=r[16],
            done_ratio=r[17],
        )

    def query_issues(
        self,
        project_id: Optional[int] = None,
        sort: IssueSortOrder = IssueSortOrder.UPDATED_DESC,
        text_filter: Optional[str] = None,
        assignee_id: Optional[int] = None,
    ) -> List[Issue]:
        sql = f"SELECT {self.ISSUE_COLUMNS} FROM issues WHERE 1=1"
        params: List[object] = []
        if project_id is not None:
            sql += " AND project_id = ?"
            params.append(project_id)
        if assignee_id is not None:
            sql += " AND assigned_to_id = ?"
            params.append(assignee_id)
        if text_filter:
            sql += (
                " AND (casefold(subject) LIKE ? ESCAPE '\\'"
                " OR casefold(description) LIKE ? ESCAPE '\\'"
                " OR CAST(id AS TEXT) LIKE ? ESCAPE '\\')"
            )
            params.extend([_like_pattern(text_filter)] * 3)
        sql += f" ORDER BY {_SORT_SQL[sort]}"
        return [self._issue_from_row(r) for r in self._read(sql, params)]

    def count_issues(self, project_id: Optional[int] = None) -> int:
        if project_id is None:
            return int(self._read("SELECT COUNT(*) FROM issues")[0][0])
        return int(self._read("SELECT COUNT(*) FROM issues WHERE project_id = ?", (project_id,))[0][0])

    def clear_issues_for_project(self, project_id: int) -> None:
        # details reference journals, journals reference issues: delete leaves first
        with self._transaction("issue cleanup") as cur:
            cur.execute(
                """
                DELETE FROM journal_details WHERE journal_id IN (
                    SELECT j.id FROM journals j JOIN issues i ON j.issue_id = i.id
                    WHERE i.project_id = ?
                )
                """,
                (project_id,),
            )
            cur.execute(
                "DELETE FROM journals WHERE issue_id IN (SELECT id FROM issues WHERE project_id = ?)",
                (project_id,),
            )
            cur.execute("DELETE FROM issues WHERE project_id = ?", (project_id,))
            cur.execute("UPDATE projects SET last_issue_activity = NULL WHERE id = ?", (project_id,))

    def upsert_issue_with_journals(self, issue: Issue) -> None:
        with self._transaction(f"issue #{issue.id}") as cur:
            self._insert_issue(cur, issue)
            cur.execute(
                "DELETE FROM journal_details WHERE journal_id IN (SELECT id FROM journals WHERE issue_id = ?)",
                (issue.id,),
            )
            cur.execute("DELETE FROM journals WHERE issue_id = ?", (issue.id,))
            for j in issue.journals:
                cur.execute(
                    "INSERT OR REPLACE INTO journals (id, issue_id, user_id, user_name, notes, created_on, private_notes) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (j.id, issue.id, j.user.id, j.user.name, j.notes, format_ts(j.created_on), int(j.private_notes)),
                )
                cur.executemany(
                    "INSERT INTO journal_details (journal_id, property, name, old_value, new_value) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [(j.id, d.property, d.name, d.old_value, d.new_value) for d in j.details],
                )
            cur.execute(
                "UPDATE projects SET last_issue_activity = ?, last_issues_sync = ? WHERE id = ?",
                (format_ts(issue.updated_on), format_ts(utcnow()), issue.project.id),
            )

    def fetch_issue_with_journals(self, issue_id: int) -> Optional[Issue]:
        rows = self._read(f"SELECT {self.ISSUE_COLUMNS} FROM issues WHERE id = ?", (issue_id,))
        if not rows:
            return None
        issue = self._issue_from_row(rows[0])
        journal_rows = self._read(
            "SELECT id, user_id, user_name, notes, created_on, private_notes FROM journals "
            "WHERE issue_id = ? ORDER BY created_on ASC, id ASC",
            (issue_id,),
        )
        for jr in journal_rows:
            details = [
                JournalDetail(property=d[0], name=d[1], old_value=d[2], new_value=d[3])
                for d in self._read(
                    "SELECT property, name, old_value, new_value FROM journal_details "
                    "WHERE journal_id = ? ORDER BY id ASC",
                    (jr[0],),
                )
            ]
            issue.journals.append(Journal(
                id=jr[0],
                user=IdName(jr[1], jr[2]),
                notes=jr[3],
                created_on=self._stored_ts(jr[4]),
                private_notes=bool(jr[5]),
                details=details,
            ))
        return issue

    # --- Users ---
    def upsert_users(self, users: Sequence[User]) -> None:
        now = format_ts(utcnow())
        with self._transaction("users") as cur:
            cur.executemany(
                "INSERT OR REPLACE INTO users (id, login, firstname, lastname, mail, cached_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                [(u.id, u.login, u.firstname, u.lastname, u.mail, now) for u in users],
            )
            cur.execute(
                "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                (USERS_SYNC_KEY, now),
            )

    def query_users(self) -> List[User]:
        rows = self._read("SELECT id, login, firstname, lastname, mail FROM users ORDER BY lastname, firstname")
        return [User(*r) for r in rows]

    # --- Metadata ---
    def global_sync_timestamp(self, key: str) -> Optional[dt.datetime]:
        rows = self._read("SELECT value FROM metadata WHERE key = ?", (key,))
        return self._stored_ts(rows[0][0]) if rows else None


# -----------------------------
# Redmine REST
# -----------------------------
def _session(api_key: str) -> requests.Session:
    s = requests.Session()
    s.headers["X-Redmine-API-Key"] = api_key
    s.headers["Content-Type"] = "application/json"
    s.headers["Accept"] = "application/json"
    return s


class RedmineClient:
    def __init__(self, base_url: str, api_key: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or _session(api_key)

    @classmethod
    def from_config(cls, cfg: Config) -> "RedmineClient":
        return cls(cfg.redmine_url, cfg.api_key, timeout=cfg.request_timeout)

    def _request(self, method: str, path: str, params: Optional[Dict[str, object]] = None,
                 payload: Optional[Dict[str, object]] = None) -> Optional[Dict]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            resp = self.session.request(method, url, params=params, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as exc:
            raise RemoteError(f"{method} {path} timed out", kind='timeout') from exc
        except requests.exceptions.ConnectionError as exc:
            raise RemoteError(f"{method} {path} failed: {exc}", kind='connection') from exc
        except requests.exceptions.RequestException as exc:
            raise RemoteError(f"{method} {path} failed: {exc}") from exc
        if resp.status_code >= 300:
            logger.warning('%s %s HTTP %s: %s', method, path, resp.status_code, resp.text[:200])
            raise RemoteError(
                f"API request failed with status {resp.status_code}: {resp.text[:200]}",
                status=resp.status_code,
            )
        if not resp.content:
            return None
        try:
            data = resp.json()
        except ValueError as exc:
            raise RemoteError(f"Failed to parse JSON response from {path}: {resp.text[:200]}") from exc
        if not isinstance(data, dict):
            raise RemoteError(f"Unexpected response from {path}: expected an object")
        return data

    def _get(self, path: str, params: Optional[Dict[str, object]] = None) -> Dict:
        return self._request("GET", path, params=params) or {}

    @staticmethod
    def _decode(path: str, decoder: Callable[[], object]):
        try:
            return decoder()
        except (KeyError, TypeError, ValueError) as exc:
            raise RemoteError(f"Unexpected response shape from {path}: {exc}") from exc

    def _page(self, path: str, key: str, convert: Callable[[Dict], object],
              params: Dict[str, object]) -> Page:
        data = self._get(path, params)

        def _build() -> Page:
            items = [convert(x) for x in data.get(key) or [] if isinstance(x, dict)]
            total = data.get('total_count')
            return Page(
                items=items,
                total_count=None if total is None else int(total),
                offset=int(data.get('offset') or params.get('offset') or 0),
                limit=int(data.get('limit') or params.get('limit') or 0),
            )
        return self._decode(path, _build)

    def get_projects(self, limit: int = PAGE_SIZE, offset: int = 0) -> Page:
        return self._page("projects.json", "projects", project_from_api, {"limit": limit, "offset": offset})

    def get_issues(self, project_id: Optional[int] = None, status_id: Optional[str] = "*",
                   limit: int = PAGE_SIZE, offset: int = 0, exclude_subprojects: bool = True) -> Page:
        params: Dict[str, object] = {"limit": limit, "offset": offset}
        if project_id is not None:
            params["project_id"] = project_id
            if exclude_subprojects:
                params["subproject_id"] = "!*"
        if status_id:
            params["status_id"] = status_id
        return self._page("issues.json", "issues", issue_from_api, params)

    def get_recent_issues(self, limit: int = RECENT_ISSUE_COUNT, offset: int = 0) -> Page:
        params = {"limit": limit, "offset": offset, "sort": "updated_on:desc", "status_id": "*"}
        return self._page("issues.json", "issues", issue_from_api, params)

    def get_issue(self, issue_id: int) -> Issue:
        path = f"issues/{issue_id}.json"
        data = self._get(path, {"include": "journals,attachments"})
        return self._decode(path, lambda: issue_from_api(data['issue']))

    def create_issue(self, payload: Dict[str, object]) -> Issue:
        data = self._request("POST", "issues.json", payload={"issue": payload}) or {}
        return self._decode("issues.json", lambda: issue_from_api(data['issue']))

    def update_issue(self, issue_id: int, payload: Dict[str, object]) -> None:
        self._request("PUT", f"issues/{issue_id}.json", payload={"issue": payload})

    def _id_names(self, path: str, key: str) -> List[IdName]:
        data = self._get(path)
        return self._decode(path, lambda: [IdName(int(x['id']), str(x.get('name') or ''))
                                           for x in data.get(key) or [] if isinstance(x, dict)])

    def get_trackers(self) -> List[IdName]:
        return self._id_names("trackers.json", "trackers")

    def get_issue_statuses(self) -> List[IdName]:
        return self._id_names("issue_statuses.json", "issue_statuses")

    def get_priorities(self) -> List[IdName]:
        return self._id_names("enumerations/issue_priorities.json", "issue_priorities")

    def get_current_user(self) -> User:
        data = self._get("users/current.json")
        return self._decode("users/current.json", lambda: user_from_api(data['user']))

    def get_users(self, limit: int = PAGE_SIZE, offset: int = 0) -> Page:
        return self._page("users.json", "users", user_from_api, {"limit": limit, "offset": offset})

    def get_project_memberships(self, project_id: int, limit: int = PAGE_SIZE) -> List[User]:
        path = f"projects/{project_id}/memberships.json"
        users: List[User] = []
        seen: Set[int] = set()
        offset = 0
        while True:
            data = self._get(path, {"limit": limit, "offset": offset})
            members = data.get('memberships') or []
            for m in members:
                person = _id_name(m.get('user')) if isinstance(m, dict) else None
                # group memberships carry no user
                if person is None or person.id in seen:
                    continue
                seen.add(person.id)
                users.append(User(id=person.id, login='', firstname=person.name, lastname=''))
            if len(members) < limit:
                break
            offset += limit
        return users

    def get_project_detail(self, project_id: int) -> ProjectDetail:
        path = f"projects/{project_id}.json"
        data = self._get(path, {"include": "trackers,issue_categories"})

        def _build() -> ProjectDetail:
            raw = data['project']
            return ProjectDetail(
                project=project_from_api(raw),
                trackers=[n for n in (_id_name(t) for t in raw.get('trackers') or []) if n],
                categories=[n for n in (_id_name(c) for c in raw.get('issue_categories') or []) if n],
            )
        return self._decode(path, _build)


# -----------------------------
# Sync
# -----------------------------
class SyncState(Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"


class SyncStep(Enum):
    CONTINUE = "continue"
    COMPLETED = "completed"


def _short_page(page: Page, requested: int) -> bool:
    # a server that caps `limit` echoes the effective value back
    limit = min(requested, page.limit) if page.limit else requested
    return len(page.items) < limit


@dataclass
class ProjectSnapshot:
    """Everything a project-list sync fetched, ready to be written to the cache."""
    projects: List[Project]
    recent_issues: List[Issue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class ProjectSyncResult:
    count: int
    warnings: List[str] = field(default_factory=list)


@dataclass
class ProjectOptions:
    """Per-project choices for issue forms; None means fall back to global lists."""
    users: Optional[List[User]] = None
    trackers: Optional[List[IdName]] = None
    categories: List[IdName] = field(default_factory=list)


@dataclass
class Metadata:
    trackers: List[IdName] = field(default_factory=list)
    statuses: List[IdName] = field(default_factory=list)
    priorities: List[IdName] = field(default_factory=list)
    current_user_id: Optional[int] = None


class SyncController:
    """Paginated fetch-and-merge cycles between Redmine and the cache.

    Issue sync for one project is driven a page at a time via ``advance_one_page``
    (or the split ``fetch_next_page``/``apply_page`` pair when the fetch runs off
    the UI thread). The buffer is flushed into the cache exactly once, when the
    last page arrives; a failed page discards it.
    """

    def __init__(self, cache: IssueCache, client: Optional[RedmineClient],
                 page_size: int = PAGE_SIZE, recent_issue_count: int = RECENT_ISSUE_COUNT,
                 exclude_subprojects: bool = True):
        self.cache = cache
        self.client = client
        self.page_size = page_size
        self.recent_issue_count = recent_issue_count
        self.exclude_subprojects = exclude_subprojects
        self.state = SyncState.IDLE
        self.project_id: Optional[int] = None
        self.loaded_count = 0
        self.total_count: Optional[int] = None
        self.last_cache_error: Optional[CacheError] = None
        self._buffer: List[Issue] = []

    @classmethod
    def from_config(cls, cache: IssueCache, client: Optional[RedmineClient], cfg: Config) -> "SyncController":
        return cls(cache, client, page_size=cfg.page_size, recent_issue_count=cfg.recent_issue_count,
                   exclude_subprojects=cfg.exclude_subprojects)

    @property
    def in_progress(self) -> bool:
        return self.state is SyncState.IN_PROGRESS

    def _require_client(self) -> RedmineClient:
        if self.client is None:
            raise SyncError("data", RemoteError("Redmine is not configured"))
        return self.client

    def _reset(self) -> None:
        self.state = SyncState.IDLE
        self._buffer = []

    # --- per-project issue sync ---
    def begin(self, project_id: int) -> bool:
        if self.in_progress:
            return False
        self.state = SyncState.IN_PROGRESS
        self.project_id = project_id
        self._buffer = []
        self.loaded_count = 0
        self.total_count = None
        self.last_cache_error = None
        return True

    def cancel(self) -> None:
        if self.in_progress:
            logger.info("Issue sync for project %s cancelled after %d issues", self.project_id, len(self._buffer))
        self._reset()

    def fetch_next_page(self) -> Optional[Page]:
        """Network half of a step: fetch the page at offset == buffered count."""
        if not self.in_progress:
            return None
        try:
            client = self._require_client()
            return client.get_issues(
                project_id=self.project_id,
                status_id="*",
                limit=self.page_size,
                offset=len(self._buffer),
                exclude_subprojects=self.exclude_subprojects,
            )
        except SyncError:
            self._reset()
            raise
        except RemoteError as exc:
            logger.warning("Issue page fetch failed for project %s at offset %d: %s",
                           self.project_id, len(self._buffer), exc)
            self._reset()
            raise SyncError("issues", exc) from exc

    def apply_page(self, page: Optional[Page]) -> SyncStep:
        if not self.in_progress or page is None:
            return SyncStep.COMPLETED
        self._buffer.extend(page.items)
        self.loaded_count = len(self._buffer)
        if page.total_count is not None:
            self.total_count = page.total_count
        short_page = _short_page(page, self.page_size)
        reached_total = self.total_count is not None and self.loaded_count >= self.total_count
        if short_page or reached_total:
            self._flush()
            return SyncStep.COMPLETED
        return SyncStep.CONTINUE

    def advance_one_page(self) -> SyncStep:
        return self.apply_page(self.fetch_next_page())

    def _flush(self) -> None:
        issues = self._buffer
        project_id = self.project_id
        self._reset()
        try:
            self.cache.upsert_issues(issues)
            logger.info("Stored %d issues for project %s", len(issues), project_id)
        except CacheError as exc:
            self.last_cache_error = exc
            logger.error("Failed to store issues for project %s: %s", project_id, exc)

    def progress_message(self) -> str:
        total = "?" if self.total_count is None else str(self.total_count)
        return f"Loading issues... {self.loaded_count}/{total}"

    # --- project list sync ---
    def _fetch_all(self, fetch_page: Callable[..., Page], operation: str) -> List:
        items: List = []
        offset = 0
        while True:
            try:
                page = fetch_page(limit=self.page_size, offset=offset)
            except RemoteError as exc:
                raise SyncError(operation, exc) from exc
            items.extend(page.items)
            if page.total_count is not None and len(items) >= page.total_count:
                break
            if _short_page(page, self.page_size):
                break
            offset = len(items)
        return items

    def fetch_project_snapshot(self) -> ProjectSnapshot:
        client = self._require_client()
        snapshot = ProjectSnapshot(projects=self._fetch_all(client.get_projects, "projects"))
        try:
            snapshot.recent_issues = client.get_recent_issues(limit=self.recent_issue_count, offset=0).items
        except RemoteError as exc:
            logger.warning("Failed to fetch recent issues for project activity update: %s", exc)
        return snapshot

    def store_project_snapshot(self, snapshot: ProjectSnapshot) -> ProjectSyncResult:
        warnings = list(snapshot.warnings)
        try:
            self.cache.upsert_projects(snapshot.projects)
        except CacheError as exc:
            logger.error("%s", exc)
            warnings.append(str(exc))
        if snapshot.recent_issues:
            latest: Dict[int, dt.datetime] = {}
            for issue in snapshot.recent_issues:
                seen = latest.get(issue.project.id)
                if seen is None or issue.updated_on > seen:
                    latest[issue.project.id] = issue.updated_on
            try:
                self.cache.upsert_issues(snapshot.recent_issues)
                for project_id, ts in latest.items():
                    self.cache.touch_project_activity(project_id, ts)
            except CacheError as exc:
                logger.warning("Failed to cache recent issues: %s", exc)
        return ProjectSyncResult(count=len(snapshot.projects), warnings=warnings)

    def sync_all_projects(self) -> ProjectSyncResult:
        outcome = self.store_project_snapshot(self.fetch_project_snapshot())
        try:
            self.sync_users()
        except (SyncError, CacheError) as exc:
            # listing users needs admin rights on most servers
            logger.warning("%s", exc)
        return outcome

    # --- users ---
    def fetch_users(self) -> List[User]:
        return self._fetch_all(self._require_client().get_users, "users")

    def store_users(self, users: Sequence[User]) -> Optional[CacheError]:
        try:
            self.cache.upsert_users(users)
        except CacheError as exc:
            logger.warning("Failed to cache users: %s", exc)
            return exc
        return None

    def sync_users(self) -> int:
        users = self.fetch_users()
        err = self.store_users(users)
        if err is not None:
            raise err
        return len(users)

    # --- single issue ---
    def fetch_issue(self, issue_id: int) -> Issue:
        try:
            return self._require_client().get_issue(issue_id)
        except RemoteError as exc:
            raise SyncError(f"issue #{issue_id}", exc) from exc

    def store_issue(self, issue: Issue) -> Optional[CacheError]:
        try:
            self.cache.upsert_issue_with_journals(issue)
        except CacheError as exc:
            logger.error("%s", exc)
            self.last_cache_error = exc
            return exc
        return None

    def refresh_issue(self, issue_id: int) -> Issue:
        issue = self.fetch_issue(issue_id)
        self.store_issue(issue)
        return issue

    def load_metadata(self) -> Metadata:
        client = self._require_client()
        meta = Metadata()
        for attr, fetch in (("trackers", client.get_trackers),
                            ("statuses", client.get_issue_statuses),
                            ("priorities", client.get_priorities)):
            try:
                setattr(meta, attr, fetch())
            except RemoteError as exc:
                logger.warning("Failed to load %s: %s", attr, exc)
        try:
            meta.current_user_id = client.get_current_user().id
        except RemoteError as exc:
            logger.warning("Failed to load current user: %s", exc)
        return meta

    def fetch_project_options(self, project_id: int) -> ProjectOptions:
        """Members, trackers and categories of one project, each best-effort."""
        client = self._require_client()
        options = ProjectOptions()
        try:
            options.users = client.get_project_memberships(project_id, limit=self.page_size)
        except RemoteError as exc:
            logger.warning("Failed to load members of project %s: %s", project_id, exc)
        try:
            detail = client.get_project_detail(project_id)
            options.trackers = detail.trackers or None
            options.categories = detail.categories
        except RemoteError as exc:
            logger.warning("Failed to load details of project %s: %s", project_id, exc)
        return options


# -----------------------------
# View (filter/query facade)
# -----------------------------
@dataclass
class ViewState:
    project_filter: str = ""
    issue_filter: str = ""
    sort_order: IssueSortOrder = IssueSortOrder.UPDATED_DESC
    my_issues_only: bool = False
    current_user_id: Optional[int] = None
    selected_project_id: Optional[int] = None
    projects_cursor: int = 0
    issues_cursor: int = 0
    group_by_status: bool = False
    collapsed_statuses: Set[str] = field(default_factory=set)


@dataclass
class ViewResult:
    projects: List[Project] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)
    total_projects: int = 0
    total_issues: int = 0
    projects_last_synced: Optional[dt.datetime] = None
    selected_project: Optional[Project] = None
    errors: List[str] = field(default_factory=list)


def _clamp(cursor: int, length: int) -> int:
    return max(0, min(cursor, length - 1))


def refresh_view(cache: IssueCache, state: ViewState) -> ViewResult:
    """Re-query everything the UI shows; the only way visible lists change.

    Cursors in ``state`` are clamped in place against the new results.
    """
    result = ViewResult()
    try:
        result.projects_last_synced = cache.global_sync_timestamp(PROJECTS_SYNC_KEY)
    except CacheError as exc:
        result.errors.append(str(exc))
    try:
        result.total_projects = cache.count_projects()
        result.projects = cache.query_projects(state.project_filter or None)
    except CacheError as exc:
        result.errors.append(f"Failed to query projects: {exc}")
    state.projects_cursor = _clamp(state.projects_cursor, len(result.projects))

    pid = state.selected_project_id
    assignee = state.current_user_id if state.my_issues_only else None
    # "mine" cannot be answered before the current user is known
    mine_unknown = state.my_issues_only and assignee is None
    try:
        if pid is not None:
            result.selected_project = cache.fetch_project(pid)
        result.total_issues = cache.count_issues(pid)
        if not mine_unknown:
            result.issues = cache.query_issues(pid, state.sort_order, state.issue_filter or None, assignee)
    except CacheError as exc:
        result.errors.append(f"Failed to query issues: {exc}")
    visible = visible_item_count(result.issues, state.group_by_status, state.collapsed_statuses)
    state.issues_cursor = _clamp(state.issues_cursor, visible)
    return result


STATUS_RANK_KEYWORDS = (("progress", 1), ("feedback", 2), ("new", 3), ("resolved", 4), ("closed", 5))
OTHER_STATUS_RANK = 99


def status_rank(name: Optional[str]) -> int:
    norm = (name or "").lower()
    for keyword, rank in STATUS_RANK_KEYWORDS:
        if keyword in norm:
            return rank
    return OTHER_STATUS_RANK


def status_groups(issues: Sequence[Issue]) -> List[Tuple[str, List[Issue]]]:
    """Issues grouped by status name; groups ordered by rank, then first appearance."""
    groups: Dict[str, List[Issue]] = {}
    for issue in issues:
        groups.setdefault(issue.status.name, []).append(issue)
    return [(name, groups[name]) for name in sorted(groups, key=status_rank)]


def grouped_rows(issues: Sequence[Issue], collapsed: Set[str]) -> List[Tuple[str, Optional[Issue]]]:
    """Display rows in grouped mode: (status, None) for a header, (status, issue) otherwise."""
    rows: List[Tuple[str, Optional[Issue]]] = []
    for status, members in status_groups(issues):
        rows.append((status, None))
        if status not in collapsed:
            rows.extend((status, issue) for issue in members)
    return rows


def visible_item_count(issues: Sequence[Issue], grouped: bool, collapsed: Set[str]) -> int:
    if not grouped:
        return len(issues)
    return len(grouped_rows(issues, collapsed))


def item_at_cursor(issues: Sequence[Issue], cursor: int, grouped: bool, collapsed: Set[str]) -> Optional[Issue]:
    if not grouped:
        return issues[cursor] if 0 <= cursor < len(issues) else None
    rows = grouped_rows(issues, collapsed)
    return rows[cursor][1] if 0 <= cursor < len(rows) else None


def status_at_cursor(issues: Sequence[Issue], cursor: int, collapsed: Set[str]) -> Optional[str]:
    """Status name when the cursor sits on a group header."""
    rows = grouped_rows(issues, collapsed)
    if 0 <= cursor < len(rows) and rows[cursor][1] is None:
        return rows[cursor][0]
    return None


def group_containing_cursor(issues: Sequence[Issue], cursor: int, collapsed: Set[str]) -> Optional[str]:
    rows = grouped_rows(issues, collapsed)
    return rows[cursor][0] if 0 <= cursor < len(rows) else None


def header_position_for_group(issues: Sequence[Issue], status: str, collapsed: Set[str]) -> Optional[int]:
    for idx, (name, issue) in enumerate(grouped_rows(issues, collapsed)):
        if issue is None and name == status:
            return idx
    return None


def issue_updated_since_sync(issue: Issue, project: Optional[Project]) -> bool:
    if project is None or project.last_issues_sync is None:
        return False
    return issue.updated_on > project.last_issues_sync


def project_has_new_activity(project: Project) -> bool:
    if project.last_issues_sync is None or project.last_issue_activity is None:
        return False
    return project.last_issue_activity > project.last_issues_sync


ATTRIBUTE_LABELS = {
    'status_id': 'Status',
    'assigned_to_id': 'Assignee',
    'priority_id': 'Priority',
    'tracker_id': 'Tracker',
    'done_ratio': 'Progress',
    'estimated_hours': 'Estimated Time',
    'due_date': 'Due Date',
    'start_date': 'Start Date',
    'subject': 'Subject',
    'description': 'Description',
    'category_id': 'Category',
}


def describe_journal_detail(detail: JournalDetail, lookups: Optional[Dict[str, Dict[int, str]]] = None) -> str:
    """Human-readable line for one journal change; ids resolve through ``lookups`` per attribute."""
    if detail.property == 'attachment':
        filename = detail.new_value or detail.old_value
        label = f"File {filename}" if filename else "File"
        return f"{label} added" if detail.new_value else f"{label} deleted"
    if detail.property == 'cf':
        label = f"Custom field {detail.name}"
    else:
        label = ATTRIBUTE_LABELS.get(detail.name, detail.name)
    if detail.name == 'description' and detail.property == 'attr':
        return "Description updated"
    names = (lookups or {}).get(detail.name, {})

    def _verbose(value: Optional[str]) -> Optional[str]:
        if value is None or value == '':
            return None
        if value.isdigit() and int(value) in names:
            return names[int(value)]
        if detail.name == 'done_ratio':
            return f"{value}%"
        return value

    old = _verbose(detail.old_value)
    new = _verbose(detail.new_value)
    if old and new:
        return f"{label} changed from {old} to {new}"
    if new:
        return f"{label} set to {new}"
    if old:
        return f"{label} deleted ({old})"
    return f"{label} changed"


# -----------------------------
# Issue forms
# -----------------------------
class FieldKind(Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    DROPDOWN = "dropdown"
    SEARCHABLE_DROPDOWN = "searchable_dropdown"
    DATE = "date"
    NUMBER = "number"
    FLOAT = "float"
    CHECKBOX = "checkbox"
    PROGRESS = "progress"


@dataclass(frozen=True)
class TextValue:
    text: str = ""


@dataclass(frozen=True)
class NumberValue:
    number: Optional[int] = None


@dataclass(frozen=True)
class FloatValue:
    number: Optional[float] = None


@dataclass(frozen=True)
class BoolValue:
    flag: bool = False


@dataclass(frozen=True)
class OptionValue:
    option_id: Optional[int] = None


FieldValue = Union[TextValue, NumberValue, FloatValue, BoolValue, OptionValue]

_VALUE_TYPES = {
    FieldKind.TEXT: TextValue,
    FieldKind.TEXTAREA: TextValue,
    FieldKind.DATE: TextValue,
    FieldKind.DROPDOWN: OptionValue,
    FieldKind.SEARCHABLE_DROPDOWN: OptionValue,
    FieldKind.NUMBER: NumberValue,
    FieldKind.PROGRESS: NumberValue,
    FieldKind.FLOAT: FloatValue,
    FieldKind.CHECKBOX: BoolValue,
}

UNASSIGNED_ID = 0


@dataclass
class FormField:
    key: str
    label: str
    kind: FieldKind
    required: bool = False
    options: List[IdName] = field(default_factory=list)
    default: Optional[FieldValue] = None
    help_text: Optional[str] = None

    def initial_value(self) -> FieldValue:
        if self.default is not None:
            return self.default
        if self.kind is FieldKind.PROGRESS:
            return NumberValue(0)
        return _VALUE_TYPES[self.kind]()


class IssueForm:
    def __init__(self, fields: Optional[List[FormField]] = None):
        self.fields: List[FormField] = []
        self.values: Dict[str, FieldValue] = {}
        self.current_field_idx = 0
        for f in fields or []:
            self.add_field(f)

    def add_field(self, form_field: FormField) -> None:
        self.fields.append(form_field)
        self.values[form_field.key] = form_field.initial_value()

    def field(self, key: str) -> Optional[FormField]:
        return next((f for f in self.fields if f.key == key), None)

    def current_field(self) -> Optional[FormField]:
        if 0 <= self.current_field_idx < len(self.fields):
            return self.fields[self.current_field_idx]
        return None

    def next_field(self) -> None:
        if self.fields:
            self.current_field_idx = (self.current_field_idx + 1) % len(self.fields)

    def prev_field(self) -> None:
        if self.fields:
            self.current_field_idx = (self.current_field_idx - 1) % len(self.fields)

    def get_value(self, key: str) -> Optional[FieldValue]:
        return self.values.get(key)

    def set_value(self, key: str, value: FieldValue) -> None:
        form_field = self.field(key)
        if form_field is None:
            raise KeyError(key)
        expected = _VALUE_TYPES[form_field.kind]
        if not isinstance(value, expected):
            raise TypeError(f"{form_field.label} expects {expected.__name__}, got {type(value).__name__}")
        self.values[key] = value

    def set_from_text(self, key: str, raw: str) -> None:
        """Parse user-typed text into the field's typed value."""
        form_field = self.field(key)
        if form_field is None:
            raise KeyError(key)
        text = raw.strip()
        kind = form_field.kind
        if kind in (FieldKind.TEXT, FieldKind.TEXTAREA):
            self.values[key] = TextValue(raw)
        elif kind is FieldKind.DATE:
            if text:
                try:
                    dt.date.fromisoformat(text)
                except ValueError as exc:
                    raise ValidationError(f"{form_field.label} must be YYYY-MM-DD") from exc
            self.values[key] = TextValue(text)
        elif kind in (FieldKind.NUMBER, FieldKind.PROGRESS):
            try:
                number = int(text) if text else None
            except ValueError as exc:
                raise ValidationError(f"{form_field.label} must be a whole number") from exc
            if kind is FieldKind.PROGRESS and number is not None and not 0 <= number <= 100:
                raise ValidationError(f"{form_field.label} must be between 0 and 100")
            self.values[key] = NumberValue(number)
        elif kind is FieldKind.FLOAT:
            try:
                self.values[key] = FloatValue(float(text) if text else None)
            except ValueError as exc:
                raise ValidationError(f"{form_field.label} must be a number") from exc
        elif kind is FieldKind.CHECKBOX:
            self.values[key] = BoolValue(text.lower() in ("1", "y", "yes", "true", "x"))
        else:
            matches = self.filtered_options(key, text)
            if text and not matches:
                raise ValidationError(f"No {form_field.label.lower()} matches '{text}'")
            self.values[key] = OptionValue(matches[0].id if text else None)

    def filtered_options(self, key: str, search: str) -> List[IdName]:
        """Options matching ``search``; an exact name match wins over substring matches."""
        form_field = self.field(key)
        if form_field is None:
            return []
        needle = search.strip().lower()
        if not needle:
            return list(form_field.options)
        exact = [o for o in form_field.options if o.name.lower() == needle]
        if exact:
            return exact
        return [o for o in form_field.options if needle in o.name.lower()]

    def validate(self) -> None:
        for f in self.fields:
            if not f.required:
                continue
            value = self.values.get(f.key)
            if value is None:
                raise ValidationError(f"{f.label} is required")
            if isinstance(value, TextValue) and not value.text.strip():
                raise ValidationError(f"{f.label} is required")
            if isinstance(value, OptionValue) and value.option_id is None:
                raise ValidationError(f"{f.label} is required")

    def _payload(self, unassign_value: object) -> Dict[str, object]:
        payload: Dict[str, object] = {}
        for f in self.fields:
            value = self.values.get(f.key)
            if isinstance(value, TextValue):
                if value.text.strip():
                    payload[f.key] = value.text
            elif isinstance(value, OptionValue):
                if value.option_id is None:
                    continue
                if f.key == 'assigned_to_id' and value.option_id == UNASSIGNED_ID:
                    if unassign_value is not None:
                        payload[f.key] = unassign_value
                    continue
                payload[f.key] = value.option_id
            elif isinstance(value, (NumberValue, FloatValue)):
                if value.number is not None:
                    payload[f.key] = value.number
            elif isinstance(value, BoolValue):
                if value.flag:
                    payload[f.key] = True
        return payload

    def create_payload(self, project_id: int) -> Dict[str, object]:
        self.validate()
        payload = self._payload(unassign_value=None)
        payload['project_id'] = project_id
        return payload

    def update_payload(self) -> Dict[str, object]:
        # Redmine clears the assignee when assigned_to_id is an empty string
        self.validate()
        return self._payload(unassign_value="")


def _pick_default(options: Sequence[IdName], preferred: str = "") -> Optional[int]:
    if not options:
        return None
    if preferred:
        for o in options:
            if o.name.lower() == preferred.lower():
                return o.id
    return options[0].id


def _user_options(users: Sequence[User]) -> List[IdName]:
    return [IdName(UNASSIGNED_ID, "(None)")] + [IdName(u.id, u.display_name) for u in users if u.id != UNASSIGNED_ID]


def new_issue_form(trackers: Sequence[IdName], statuses: Sequence[IdName], priorities: Sequence[IdName],
                   users: Sequence[User], categories: Sequence[IdName] = ()) -> IssueForm:
    form = IssueForm()
    form.add_field(FormField("tracker_id", "Tracker", FieldKind.SEARCHABLE_DROPDOWN, True, list(trackers),
                             OptionValue(_pick_default(trackers))))
    form.add_field(FormField("subject", "Subject", FieldKind.TEXT, True))
    form.add_field(FormField("description", "Description", FieldKind.TEXTAREA))
    form.add_field(FormField("status_id", "Status", FieldKind.SEARCHABLE_DROPDOWN, True, list(statuses),
                             OptionValue(_pick_default(statuses, "New"))))
    form.add_field(FormField("priority_id", "Priority", FieldKind.SEARCHABLE_DROPDOWN, True, list(priorities),
                             OptionValue(_pick_default(priorities, "Normal"))))
    form.add_field(FormField("assigned_to_id", "Assignee", FieldKind.SEARCHABLE_DROPDOWN, False, _user_options(users)))
    if categories:
        form.add_field(FormField("category_id", "Category", FieldKind.DROPDOWN, False, list(categories)))
    form.add_field(FormField("start_date", "Start Date", FieldKind.DATE, help_text="Format: YYYY-MM-DD"))
    form.add_field(FormField("due_date", "Due Date", FieldKind.DATE, help_text="Format: YYYY-MM-DD"))
    form.add_field(FormField("estimated_hours", "Estimated Hours", FieldKind.FLOAT))
    form.add_field(FormField("done_ratio", "% Done", FieldKind.PROGRESS, help_text="0-100%"))
    return form


def update_issue_form(issue: Issue, statuses: Sequence[IdName], users: Sequence[User],
                      categories: Sequence[IdName] = ()) -> IssueForm:
    form = IssueForm()
    form.add_field(FormField("notes", "Notes (comment)", FieldKind.TEXTAREA))
    form.add_field(FormField("status_id", "Status", FieldKind.SEARCHABLE_DROPDOWN, False, list(statuses),
                             OptionValue(issue.status.id)))
    form.add_field(FormField("assigned_to_id", "Assignee", FieldKind.SEARCHABLE_DROPDOWN, False, _user_options(users),
                             OptionValue(issue.assigned_to.id if issue.assigned_to else UNASSIGNED_ID)))
    form.add_field(FormField("done_ratio", "% Done", FieldKind.PROGRESS, default=NumberValue(issue.done_ratio or 0)))
    if categories:
        form.add_field(FormField("category_id", "Category", FieldKind.SEARCHABLE_DROPDOWN, False, list(categories),
                                 OptionValue(issue.category.id if issue.category else None)))
    form.add_field(FormField("due_date", "Due Date", FieldKind.DATE, default=TextValue(issue.due_date or "")))
    form.add_field(FormField("estimated_hours", "Estimated Hours", FieldKind.FLOAT,
                             default=FloatValue(issue.estimated_hours)))
    form.add_field(FormField("private_notes", "Private Notes", FieldKind.CHECKBOX))
    return form


def bulk_edit_form(statuses: Sequence[IdName], priorities: Sequence[IdName], users: Sequence[User]) -> IssueForm:
    """Every field optional; unset fields are left untouched on the server."""
    return IssueForm([
        FormField("status_id", "Status", FieldKind.SEARCHABLE_DROPDOWN, False, list(statuses)),
        FormField("priority_id", "Priority", FieldKind.SEARCHABLE_DROPDOWN, False, list(priorities)),
        FormField("assigned_to_id", "Assignee", FieldKind.SEARCHABLE_DROPDOWN, False, _user_options(users)),
    ])


_SEARCHABLE_KINDS = (FieldKind.DROPDOWN, FieldKind.SEARCHABLE_DROPDOWN)


class FormEditor:
    """Keyboard editing over an IssueForm.

    Typed text stays a draft for the field under the cursor and is parsed with
    ``IssueForm.set_from_text`` when the cursor leaves the field or the form is
    submitted. For dropdowns the draft is a search over the options.
    """

    def __init__(self, form: IssueForm, title: str, mode: str,
                 project_id: Optional[int] = None, issue_ids: Sequence[int] = ()):
        self.form = form
        self.title = title
        self.mode = mode  # 'new' | 'edit' | 'bulk'
        self.project_id = project_id
        self.issue_ids = list(issue_ids)
        self.drafts: Dict[str, str] = {}
        self.error: Optional[str] = None

    def display_text(self, key: str) -> str:
        if key in self.drafts:
            return self.drafts[key]
        value = self.form.get_value(key)
        if isinstance(value, TextValue):
            return value.text
        if isinstance(value, (NumberValue, FloatValue)):
            return "" if value.number is None else str(value.number)
        if isinstance(value, BoolValue):
            return "yes" if value.flag else ""
        if isinstance(value, OptionValue):
            form_field = self.form.field(key)
            options = form_field.options if form_field else []
            return next((o.name for o in options if o.id == value.option_id), "")
        return ""

    def type_text(self, text: str) -> None:
        f = self.form.current_field()
        if f is None:
            return
        if f.key not in self.drafts:
            self.drafts[f.key] = "" if f.kind in _SEARCHABLE_KINDS else self.display_text(f.key)
        self.drafts[f.key] += text
        self.error = None

    def backspace(self) -> None:
        f = self.form.current_field()
        if f is None:
            return
        self.drafts[f.key] = self.display_text(f.key)[:-1]
        self.error = None

    def commit_current(self) -> bool:
        f = self.form.current_field()
        if f is None or f.key not in self.drafts:
            return True
        try:
            self.form.set_from_text(f.key, self.drafts[f.key])
        except ValidationError as exc:
            self.error = str(exc)
            return False
        del self.drafts[f.key]
        return True

    def next_field(self) -> None:
        if self.commit_current():
            self.form.next_field()

    def prev_field(self) -> None:
        if self.commit_current():
            self.form.prev_field()

    def options_preview(self, limit: int = 5) -> List[IdName]:
        f = self.form.current_field()
        if f is None or f.kind not in _SEARCHABLE_KINDS:
            return []
        return self.form.filtered_options(f.key, self.drafts.get(f.key, ""))[:limit]

    def ready(self) -> bool:
        """Commit the pending draft and validate; the failure lands in ``error``."""
        if not self.commit_current():
            return False
        try:
            self.form.validate()
        except ValidationError as exc:
            self.error = str(exc)
            return False
        return True


# -----------------------------
# Issue actions (network only; callers store results in the cache)
# -----------------------------
@dataclass
class BulkUpdateResult:
    updated: List[int] = field(default_factory=list)
    failures: List[Tuple[int, str]] = field(default_factory=list)

    def summary(self) -> str:
        total = len(self.updated) + len(self.failures)
        if not self.failures:
            return f"Successfully updated {len(self.updated)} issue(s)"
        details = "; ".join(f"#{i}: {err}" for i, err in self.failures)
        return f"Updated {len(self.updated)}/{total} issues. Failed: {details}"


def send_new_issue(client: RedmineClient, form: IssueForm, project_id: int) -> Issue:
    return client.create_issue(form.create_payload(project_id))


def send_issue_update(client: RedmineClient, issue_id: int, form: IssueForm) -> Issue:
    """PUT the form, then re-read the issue with journals so the new comment shows up."""
    client.update_issue(issue_id, form.update_payload())
    return client.get_issue(issue_id)


def send_bulk_update(client: RedmineClient, issue_ids: Sequence[int], form: IssueForm) -> BulkUpdateResult:
    payload = form.update_payload()
    result = BulkUpdateResult()
    if not payload:
        return result
    for issue_id in issue_ids:
        try:
            client.update_issue(issue_id, payload)
            result.updated.append(issue_id)
        except RemoteError as exc:
            logger.warning("Bulk update failed for #%s: %s", issue_id, exc)
            result.failures.append((issue_id, exc.user_message()))
    return result


# -----------------------------
# Rendering helpers
# -----------------------------
def _display_width(text: str) -> int:
    return sum(max(0, get_cwidth(ch)) for ch in text)


def _sanitize_cell_text(s: Optional[str]) -> str:
    return " ".join((s or "").split())


def _truncate(s: str, maxlen: int) -> str:
    if maxlen <= 0:
        return ""
    if _display_width(s) <= maxlen:
        return s
    out = []
    width = 0
    for ch in s:
        w = max(0, get_cwidth(ch))
        if width + w > maxlen - 1:
            break
        out.append(ch)
        width += w
    return "".join(out) + "…"


def _pad_display(text: Optional[str], width: int, align: str = "left") -> str:
    cell = _truncate(_sanitize_cell_text(text), width)
    pad = max(0, width - _display_width(cell))
    return (" " * pad + cell) if align == "right" else (cell + " " * pad)


def _fmt_when(value: Optional[dt.datetime]) -> str:
    if value is None:
        return "never"
    return value.astimezone().strftime("%Y-%m-%d %H:%M")


# -----------------------------
# UI
# -----------------------------
UI_STYLE = {
    'pane.title': 'bold #ffd75f',
    'pane.focused': 'bold #87d7ff',
    'row': '#d0d0d0',
    'row.cursor': 'reverse',
    'row.new': '#87ff5f',
    'group.header': 'bold #ffd787',
    'detail.meta': '#87d7ff',
    'detail.journal': 'bold #ffd75f',
    'form.error': 'bold #ff5f5f',
    'status': 'reverse',
}


def _load_ui_state(state_path: str) -> ViewState:
    try:
        with open(state_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError):
        return ViewState()
    if not isinstance(data, dict):
        return ViewState()
    try:
        sort_order = IssueSortOrder(data.get('sort_order', IssueSortOrder.UPDATED_DESC.value))
    except ValueError:
        sort_order = IssueSortOrder.UPDATED_DESC
    pid = data.get('selected_project_id')
    uid = data.get('current_user_id')
    return ViewState(
        project_filter=str(data.get('project_filter') or ''),
        issue_filter=str(data.get('issue_filter') or ''),
        sort_order=sort_order,
        my_issues_only=bool(data.get('my_issues_only', False)),
        current_user_id=uid if isinstance(uid, int) else None,
        selected_project_id=pid if isinstance(pid, int) else None,
        group_by_status=bool(data.get('group_by_status', False)),
        collapsed_statuses=set(data.get('collapsed_statuses') or []),
    )


def _save_ui_state(state_path: str, state: ViewState) -> None:
    data = {
        'project_filter': state.project_filter,
        'issue_filter': state.issue_filter,
        'sort_order': state.sort_order.value,
        'my_issues_only': state.my_issues_only,
        'current_user_id': state.current_user_id,
        'selected_project_id': state.selected_project_id,
        'group_by_status': state.group_by_status,
        'collapsed_statuses': sorted(state.collapsed_statuses),
    }
    try:
        d = os.path.dirname(state_path)
        if d and not os.path.isdir(d):
            os.makedirs(d, exist_ok=True)
        with open(state_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
    except OSError:
        logger.warning("Unable to write UI state to %s", state_path, exc_info=True)


def run_ui(cache: IssueCache, cfg: Config, client: Optional[RedmineClient],
           state_path: Optional[str] = None) -> None:
    """Full-screen two-pane browser over the cache; see the hotkeys at the top of this file."""
    if state_path is None:
        state_path = DEFAULT_STATE_PATH
    view = _load_ui_state(state_path)
    controller = SyncController.from_config(cache, client, cfg)
    metadata = Metadata()
    users: List[User] = []
    focus = 'issues' if view.selected_project_id is not None else 'projects'
    status_line = "" if client else "Redmine not configured; browsing cache only"
    input_mode: Optional[str] = None  # 'filter' | 'comment'
    input_buffer = ""
    busy = False
    detail_issue: Optional[Issue] = None
    detail_scroll = 0
    form_editor: Optional[FormEditor] = None
    marked: Set[int] = set()
    result = refresh_view(cache, view)

    try:
        users = cache.query_users()
    except CacheError as exc:
        status_line = str(exc)

    def _refresh() -> None:
        nonlocal result, status_line
        result = refresh_view(cache, view)
        if result.errors:
            status_line = result.errors[-1]

    def _visible_rows() -> int:
        return max(3, get_app().output.get_size().rows - 4)

    def _window(cursor: int, count: int) -> Tuple[int, int]:
        height = _visible_rows()
        start = max(0, min(cursor - height // 2, count - height))
        return start, min(count, start + height)

    def build_projects_fragments() -> List[Tuple[str, str]]:
        title_cls = 'class:pane.focused' if focus == 'projects' else 'class:pane.title'
        header = f" Projects ({len(result.projects)}/{result.total_projects})"
        if view.project_filter:
            header += f"  /{view.project_filter}"
        frags: List[Tuple[str, str]] = [(title_cls, header + "\n")]
        start, end = _window(view.projects_cursor, len(result.projects))
        for idx in range(start, end):
            p = result.projects[idx]
            marker = "●" if project_has_new_activity(p) else " "
            indent = "  " if p.parent else ""
            line = f"{marker} {indent}{p.name}"
            cls = 'class:row.cursor' if idx == view.projects_cursor and focus == 'projects' else 'class:row'
            if p.id == view.selected_project_id:
                cls += ' bold'
            frags.append((cls, _pad_display(line, 40) + "\n"))
        if not result.projects:
            frags.append(('class:row', "  (empty cache - press R to sync)\n"))
        return frags

    def _issue_line(issue: Issue) -> str:
        assignee = issue.assigned_to.name if issue.assigned_to else "-"
        return (
            f"#{issue.id:<6} " + _pad_display(issue.tracker.name, 9) + " " +
            _pad_display(issue.status.name, 12) + " " + _pad_display(issue.priority.name, 8) + " " +
            _pad_display(assignee, 16) + " " + _sanitize_cell_text(issue.subject)
        )

    def build_issues_fragments() -> List[Tuple[str, str]]:
        title_cls = 'class:pane.focused' if focus == 'issues' else 'class:pane.title'
        name = result.selected_project.name if result.selected_project else "All projects"
        header = f" {name}: {len(result.issues)}/{result.total_issues} issues  [{view.sort_order.label}]"
        if view.my_issues_only:
            header += "  [mine]"
        if view.issue_filter:
            header += f"  /{view.issue_filter}"
        frags: List[Tuple[str, str]] = [(title_cls, header + "\n")]
        if view.group_by_status:
            rows = grouped_rows(result.issues, view.collapsed_statuses)
        else:
            rows = [(i.status.name, i) for i in result.issues]
        start, end = _window(view.issues_cursor, len(rows))
        for idx in range(start, end):
            status, issue = rows[idx]
            at_cursor = idx == view.issues_cursor and focus == 'issues'
            if issue is None:
                count = sum(1 for i in result.issues if i.status.name == status)
                arrow = "▸" if status in view.collapsed_statuses else "▾"
                frags.append(('class:row.cursor' if at_cursor else 'class:group.header', f"{arrow} {status} ({count})\n"))
                continue
            cls = 'class:row.cursor' if at_cursor else 'class:row'
            if not at_cursor and issue_updated_since_sync(issue, result.selected_project):
                cls = 'class:row.new'
            mark = "* " if issue.id in marked else "  "
            frags.append((cls, mark + _issue_line(issue) + "\n"))
        if not rows:
            frags.append(('class:row', "  (no issues - press r to sync)\n"))
        return frags

    def _lookups() -> Dict[str, Dict[int, str]]:
        return {
            'status_id': {s.id: s.name for s in metadata.statuses},
            'priority_id': {p.id: p.name for p in metadata.priorities},
            'tracker_id': {t.id: t.name for t in metadata.trackers},
            'assigned_to_id': {u.id: u.display_name for u in users},
        }

    def build_detail_fragments() -> List[Tuple[str, str]]:
        issue = detail_issue
        if issue is None:
            return [("", "No selection")]
        lines: List[Tuple[str, str]] = [
            ('bold', f"#{issue.id} {issue.subject}\n"),
            ('class:detail.meta', f"{issue.tracker.name} | {issue.status.name} | {issue.priority.name}"
                                  f" | {issue.done_ratio or 0}% | due {issue.due_date or '-'}\n"),
            ('class:detail.meta', f"Author: {issue.author.name}   Assignee: "
                                  f"{issue.assigned_to.name if issue.assigned_to else '-'}\n"),
            ('class:detail.meta', f"Created {_fmt_when(issue.created_on)}   Updated {_fmt_when(issue.updated_on)}\n\n"),
            ('', (issue.description or "(no description)") + "\n"),
        ]
        lookups = _lookups()
        for j in issue.journals:
            lines.append(('class:detail.journal', f"\n— {j.user.name}, {_fmt_when(j.created_on)}\n"))
            for d in j.details:
                lines.append(('', f"  • {describe_journal_detail(d, lookups)}\n"))
            if j.notes:
                lines.append(('', j.notes + "\n"))
        if input_mode == 'comment':
            lines.append(('bold', f"\nComment> {input_buffer}▏\n"))
        else:
            lines.append(('', "\n[c] comment  [e] edit  [j/k] scroll  [q/Esc] close\n"))
        return lines[detail_scroll:] if detail_scroll < len(lines) else lines[-1:]

    def build_form_fragments() -> List[Tuple[str, str]]:
        editor = form_editor
        if editor is None:
            return [("", "")]
        frags: List[Tuple[str, str]] = []
        for idx, f in enumerate(editor.form.fields):
            current = idx == editor.form.current_field_idx
            label = f.label + (" *" if f.required else "")
            text = editor.display_text(f.key) + ("▏" if current else "")
            frags.append(('class:row.cursor' if current else 'class:row', f"{_pad_display(label, 18)} {text}\n"))
            if not current:
                continue
            for option in editor.options_preview():
                frags.append(('class:detail.meta', f"{'':20}{option.name}\n"))
            if f.help_text:
                frags.append(('class:detail.meta', f"{'':20}{f.help_text}\n"))
        if editor.error:
            frags.append(('class:form.error', f"\n{editor.error}\n"))
        frags.append(('', "\n[tab/shift-tab] field  [enter] submit  [esc] cancel\n"))
        return frags

    def build_status_bar() -> List[Tuple[str, str]]:
        if input_mode == 'filter':
            mode = f"/{input_buffer}"
        elif form_editor is not None:
            mode = "FORM"
        elif detail_issue is not None:
            mode = "DETAIL"
        else:
            mode = "BROWSE"
        synced = _fmt_when(result.projects_last_synced)
        sync_state = f"  {controller.progress_message()}" if controller.in_progress else ""
        marks = f"  marked: {len(marked)}" if marked else ""
        return [('class:status', f" {mode}  projects synced: {synced}{sync_state}{marks}  {status_line}")]

    projects_window = Window(content=FormattedTextControl(text=build_projects_fragments), width=Dimension(preferred=42, max=50))
    issues_window = Window(content=FormattedTextControl(text=build_issues_fragments), wrap_lines=False)
    status_window = Window(height=1, content=FormattedTextControl(text=build_status_bar))
    detail_window = Window(content=FormattedTextControl(text=build_detail_fragments), wrap_lines=True)
    is_detail = Condition(lambda: detail_issue is not None)
    detail_float = Float(content=ConditionalContainer(Frame(detail_window, title="Issue"), filter=is_detail),
                         top=2, bottom=2, left=4, right=4)
    form_window = Window(content=FormattedTextControl(text=build_form_fragments), wrap_lines=True)
    is_form = Condition(lambda: form_editor is not None)
    form_float = Float(content=ConditionalContainer(
        Frame(form_window, title=lambda: form_editor.title if form_editor else ""), filter=is_form),
        top=3, bottom=3, left=8, right=8)
    root = FloatContainer(
        content=HSplit([VSplit([projects_window, Window(width=1, char='│'), issues_window]), status_window]),
        floats=[detail_float, form_float],
    )

    app: Optional[Application] = None

    def invalidate() -> None:
        if app is not None:
            app.invalidate()

    def _remember() -> None:
        _save_ui_state(state_path, view)

    def _select_project(project: Project) -> None:
        nonlocal focus
        view.selected_project_id = project.id
        view.issues_cursor = 0
        view.collapsed_statuses.clear()
        marked.clear()
        focus = 'issues'
        _refresh()
        _remember()

    def _run_background(coro) -> None:
        app.create_background_task(coro)

    def _adopt_current_user(user_id: Optional[int]) -> None:
        if user_id is not None and user_id != view.current_user_id:
            view.current_user_id = user_id
            _remember()

    async def _load_users() -> Optional[str]:
        nonlocal users
        loop = asyncio.get_running_loop()
        try:
            fetched = await loop.run_in_executor(None, controller.fetch_users)
        except SyncError as exc:
            # listing users needs admin rights on most servers
            logger.warning("%s", exc)
            return None
        err = controller.store_users(fetched)
        if err is not None:
            users = list(fetched)
            return str(err)
        users = cache.query_users()
        return None

    async def _startup_worker() -> None:
        nonlocal status_line, busy, metadata
        loop = asyncio.get_running_loop()
        try:
            metadata = await loop.run_in_executor(None, controller.load_metadata)
            _adopt_current_user(metadata.current_user_id)
            if cache.count_projects() == 0:
                status_line = "Loading projects..."
                invalidate()
                snapshot = await loop.run_in_executor(None, controller.fetch_project_snapshot)
                outcome = controller.store_project_snapshot(snapshot)
                status_line = outcome.warnings[-1] if outcome.warnings else f"Loaded {outcome.count} projects"
            if not users:
                err = await _load_users()
                if err:
                    status_line = err
        except (SyncError, CacheError) as exc:
            status_line = str(exc)
            logger.exception("Startup loading failed")
        finally:
            busy = False
            _refresh()
            invalidate()

    async def _sync_issues_worker() -> None:
        nonlocal status_line, busy
        loop = asyncio.get_running_loop()
        try:
            while controller.in_progress:
                # one page per tick: network off-thread, merge on the UI thread
                page = await loop.run_in_executor(None, controller.fetch_next_page)
                step = controller.apply_page(page)
                status_line = controller.progress_message()
                invalidate()
                if step is SyncStep.COMPLETED:
                    break
            if controller.last_cache_error is not None:
                status_line = str(controller.last_cache_error)
            else:
                status_line = f"Loaded {controller.loaded_count} issues"
        except SyncError as exc:
            status_line = str(exc)
            logger.exception("Issue sync failed")
        finally:
            busy = False
            _refresh()
            invalidate()

    async def _sync_projects_worker() -> None:
        nonlocal status_line, busy, metadata
        loop = asyncio.get_running_loop()
        try:
            status_line = "Loading projects..."
            invalidate()
            snapshot = await loop.run_in_executor(None, controller.fetch_project_snapshot)
            outcome = controller.store_project_snapshot(snapshot)
            users_err = await _load_users()
            metadata = await loop.run_in_executor(None, controller.load_metadata)
            _adopt_current_user(metadata.current_user_id)
            warnings = outcome.warnings + ([users_err] if users_err else [])
            status_line = warnings[-1] if warnings else f"Loaded {outcome.count} projects"
        except (SyncError, CacheError) as exc:
            status_line = str(exc)
            logger.exception("Project sync failed")
        finally:
            busy = False
            _refresh()
            invalidate()

    async def _open_issue_worker(issue_id: int) -> None:
        nonlocal detail_issue, status_line
        loop = asyncio.get_running_loop()
        try:
            fresh = await loop.run_in_executor(None, controller.fetch_issue, issue_id)
            err = controller.store_issue(fresh)
            if detail_issue is not None and detail_issue.id == issue_id:
                detail_issue = fresh
            status_line = str(err) if err else f"Loaded issue #{issue_id}"
        except SyncError as exc:
            status_line = str(exc)
        _refresh()
        invalidate()

    async def _comment_worker(issue_id: int, text: str) -> None:
        nonlocal detail_issue, status_line, busy
        loop = asyncio.get_running_loop()
        form = IssueForm([FormField("notes", "Notes", FieldKind.TEXTAREA, required=True)])
        form.set_from_text("notes", text)
        try:
            fresh = await loop.run_in_executor(None, send_issue_update, client, issue_id, form)
            err = controller.store_issue(fresh)
            detail_issue = fresh
            status_line = str(err) if err else "Issue updated successfully"
        except (RemoteError, ValidationError) as exc:
            status_line = f"Failed to update issue: {exc}"
        finally:
            busy = False
            _refresh()
            invalidate()

    def _build_form(mode: str, options: ProjectOptions, project_id: Optional[int],
                    issue: Optional[Issue], issue_ids: Sequence[int]) -> FormEditor:
        members = options.users if options.users is not None else users
        if mode == 'new':
            form = new_issue_form(options.trackers or metadata.trackers, metadata.statuses, metadata.priorities,
                                  members, options.categories)
            return FormEditor(form, "New issue", mode, project_id=project_id)
        if mode == 'edit' and issue is not None:
            form = update_issue_form(issue, metadata.statuses, members, options.categories)
            return FormEditor(form, f"Edit #{issue.id}", mode, project_id=project_id, issue_ids=[issue.id])
        form = bulk_edit_form(metadata.statuses, metadata.priorities, members)
        return FormEditor(form, f"Bulk edit {len(issue_ids)} issue(s)", 'bulk',
                          project_id=project_id, issue_ids=issue_ids)

    async def _open_form_worker(mode: str, project_id: Optional[int], issue: Optional[Issue] = None,
                                issue_ids: Sequence[int] = ()) -> None:
        nonlocal form_editor, status_line, busy, metadata
        loop = asyncio.get_running_loop()
        try:
            if not metadata.statuses:
                metadata = await loop.run_in_executor(None, controller.load_metadata)
                _adopt_current_user(metadata.current_user_id)
            options = ProjectOptions()
            if project_id is not None:
                options = await loop.run_in_executor(None, controller.fetch_project_options, project_id)
            form_editor = _build_form(mode, options, project_id, issue, issue_ids)
            status_line = ""
        except SyncError as exc:
            status_line = str(exc)
        finally:
            busy = False
            invalidate()

    async def _store_bulk_results(issue_ids: Sequence[int]) -> List[str]:
        loop = asyncio.get_running_loop()
        errors: List[str] = []
        for issue_id in issue_ids:
            try:
                fresh = await loop.run_in_executor(None, controller.fetch_issue, issue_id)
            except SyncError as exc:
                logger.warning("%s", exc)
                continue
            err = controller.store_issue(fresh)
            if err is not None:
                errors.append(str(err))
        return errors

    async def _submit_form_worker(editor: FormEditor) -> None:
        nonlocal form_editor, detail_issue, status_line, busy
        loop = asyncio.get_running_loop()
        try:
            if editor.mode == 'new':
                created = await loop.run_in_executor(None, send_new_issue, client, editor.form, editor.project_id)
                err = controller.store_issue(created)
                status_line = str(err) if err else f"Created issue #{created.id}"
            elif editor.mode == 'edit':
                fresh = await loop.run_in_executor(None, send_issue_update, client, editor.issue_ids[0], editor.form)
                err = controller.store_issue(fresh)
                if detail_issue is not None and detail_issue.id == fresh.id:
                    detail_issue = fresh
                status_line = str(err) if err else "Issue updated successfully"
            else:
                outcome = await loop.run_in_executor(None, send_bulk_update, client, editor.issue_ids, editor.form)
                errors = await _store_bulk_results(outcome.updated)
                marked.difference_update(outcome.updated)
                status_line = errors[-1] if errors else outcome.summary()
            form_editor = None
        except (RemoteError, ValidationError) as exc:
            editor.error = str(exc)
            status_line = f"Failed to save issue: {exc}"
        finally:
            busy = False
            _refresh()
            invalidate()

    def _start_form(mode: str, project_id: Optional[int], issue: Optional[Issue] = None,
                    issue_ids: Sequence[int] = ()) -> None:
        nonlocal status_line, busy
        if client is None:
            status_line = "Redmine not configured"
        elif busy:
            status_line = "Busy; try again when the sync finishes"
        else:
            busy = True
            status_line = "Loading form..."
            _run_background(_open_form_worker(mode, project_id, issue, issue_ids))
        invalidate()

    kb = KeyBindings()
    is_input = Condition(lambda: input_mode is not None)
    is_normal = Condition(lambda: input_mode is None and detail_issue is None and form_editor is None)
    is_detail_idle = Condition(lambda: input_mode is None and detail_issue is not None and form_editor is None)

    def _move(delta: int) -> None:
        if focus == 'projects':
            view.projects_cursor = _clamp(view.projects_cursor + delta, len(result.projects))
        else:
            count = visible_item_count(result.issues, view.group_by_status, view.collapsed_statuses)
            view.issues_cursor = _clamp(view.issues_cursor + delta, count)
        invalidate()

    @kb.add('j', filter=is_normal)
    @kb.add('down', filter=is_normal)
    def _(event):
        _move(1)

    @kb.add('k', filter=is_normal)
    @kb.add('up', filter=is_normal)
    def _(event):
        _move(-1)

    @kb.add('tab', filter=is_normal)
    def _(event):
        nonlocal focus
        focus = 'issues' if focus == 'projects' else 'projects'
        invalidate()

    @kb.add('enter', filter=is_normal)
    def _(event):
        nonlocal detail_issue, detail_scroll, status_line
        if focus == 'projects':
            if result.projects:
                _select_project(result.projects[view.projects_cursor])
            invalidate()
            return
        header = status_at_cursor(result.issues, view.issues_cursor, view.collapsed_statuses) \
            if view.group_by_status else None
        if header is not None:
            view.collapsed_statuses.symmetric_difference_update({header})
            _refresh()
            _remember()
            invalidate()
            return
        issue = item_at_cursor(result.issues, view.issues_cursor, view.group_by_status, view.collapsed_statuses)
        if issue is None:
            return
        try:
            detail_issue = cache.fetch_issue_with_journals(issue.id) or issue
        except CacheError as exc:
            status_line = str(exc)
            detail_issue = issue
        detail_scroll = 0
        if client is not None:
            _run_background(_open_issue_worker(issue.id))
        invalidate()

    @kb.add(' ', filter=is_normal)
    def _(event):
        if not view.group_by_status or focus != 'issues':
            return
        group = group_containing_cursor(result.issues, view.issues_cursor, view.collapsed_statuses)
        if group is None:
            return
        view.collapsed_statuses.symmetric_difference_update({group})
        pos = header_position_for_group(result.issues, group, view.collapsed_statuses)
        if pos is not None:
            view.issues_cursor = pos
        _refresh()
        _remember()
        invalidate()

    @kb.add('/', filter=is_normal)
    def _(event):
        nonlocal input_mode, input_buffer
        input_mode = 'filter'
        input_buffer = view.project_filter if focus == 'projects' else view.issue_filter
        invalidate()

    @kb.add('s', filter=is_normal)
    def _(event):
        nonlocal status_line
        view.sort_order = view.sort_order.next()
        status_line = f"Sort: {view.sort_order.label}"
        _refresh()
        _remember()
        invalidate()

    @kb.add('m', filter=is_normal)
    def _(event):
        nonlocal status_line
        view.my_issues_only = not view.my_issues_only
        if view.my_issues_only and view.current_user_id is None:
            status_line = "Current user unknown; press R to sync first"
        _refresh()
        _remember()
        invalidate()

    @kb.add('g', filter=is_normal)
    def _(event):
        view.group_by_status = not view.group_by_status
        view.issues_cursor = 0
        _refresh()
        _remember()
        invalidate()

    @kb.add('r', filter=is_normal)
    def _(event):
        nonlocal status_line, busy
        if client is None:
            status_line = "Redmine not configured"
        elif busy:
            status_line = "Sync already running"
        elif view.selected_project_id is None:
            status_line = "Select a project first"
        elif controller.begin(view.selected_project_id):
            busy = True
            status_line = controller.progress_message()
            _run_background(_sync_issues_worker())
        invalidate()

    @kb.add('R', filter=is_normal)
    def _(event):
        nonlocal status_line, busy
        if client is None:
            status_line = "Redmine not configured"
        elif busy:
            status_line = "Sync already running"
        else:
            busy = True
            _run_background(_sync_projects_worker())
        invalidate()

    @kb.add('n', filter=is_normal)
    def _(event):
        nonlocal status_line
        if view.selected_project_id is None:
            status_line = "Select a project first"
            invalidate()
            return
        _start_form('new', view.selected_project_id)

    @kb.add('x', filter=is_normal)
    def _(event):
        nonlocal status_line
        if focus != 'issues':
            return
        issue = item_at_cursor(result.issues, view.issues_cursor, view.group_by_status, view.collapsed_statuses)
        if issue is None:
            return
        marked.symmetric_difference_update({issue.id})
        status_line = f"{len(marked)} issue(s) marked"
        _move(1)

    @kb.add('b', filter=is_normal)
    def _(event):
        nonlocal status_line
        ids = sorted(marked)
        if not ids and focus == 'issues':
            issue = item_at_cursor(result.issues, view.issues_cursor, view.group_by_status, view.collapsed_statuses)
            ids = [issue.id] if issue is not None else []
        if not ids:
            status_line = "Mark issues with x first"
            invalidate()
            return
        _start_form('bulk', view.selected_project_id, issue_ids=ids)

    @kb.add('q', filter=is_normal)
    def _(event):
        controller.cancel()
        _remember()
        event.app.exit()

    @kb.add('j', filter=is_detail_idle)
    @kb.add('down', filter=is_detail_idle)
    def _(event):
        nonlocal detail_scroll
        detail_scroll += 1
        invalidate()

    @kb.add('k', filter=is_detail_idle)
    @kb.add('up', filter=is_detail_idle)
    def _(event):
        nonlocal detail_scroll
        detail_scroll = max(0, detail_scroll - 1)
        invalidate()

    @kb.add('c', filter=is_detail_idle)
    def _(event):
        nonlocal input_mode, input_buffer, status_line
        if client is None:
            status_line = "Redmine not configured"
        else:
            input_mode = 'comment'
            input_buffer = ""
        invalidate()

    @kb.add('e', filter=is_detail_idle)
    def _(event):
        issue = detail_issue
        _start_form('edit', issue.project.id, issue=issue)

    @kb.add('q', filter=is_detail_idle)
    @kb.add('escape', filter=is_detail_idle)
    def _(event):
        nonlocal detail_issue
        detail_issue = None
        invalidate()

    @kb.add('enter', filter=is_input)
    def _(event):
        nonlocal input_mode, input_buffer, busy, status_line
        text = input_buffer
        mode = input_mode
        input_mode = None
        input_buffer = ""
        if mode == 'filter':
            if focus == 'projects':
                view.project_filter = text.strip()
                view.projects_cursor = 0
            else:
                view.issue_filter = text.strip()
                view.issues_cursor = 0
            _refresh()
            _remember()
        elif mode == 'comment' and detail_issue is not None and text.strip():
            if busy:
                status_line = "Busy; try again when the sync finishes"
            else:
                busy = True
                status_line = "Posting comment..."
                _run_background(_comment_worker(detail_issue.id, text))
        invalidate()

    @kb.add('escape', filter=is_input)
    def _(event):
        nonlocal input_mode, input_buffer
        if input_mode == 'filter':
            if focus == 'projects':
                view.project_filter = ""
            else:
                view.issue_filter = ""
            _refresh()
            _remember()
        input_mode = None
        input_buffer = ""
        invalidate()

    @kb.add('backspace', filter=is_input)
    def _(event):
        nonlocal input_buffer
        input_buffer = input_buffer[:-1]
        invalidate()

    @kb.add(Keys.Any, filter=is_input)
    def _(event):
        nonlocal input_buffer
        if event.data and event.data.isprintable():
            input_buffer += event.data
            invalidate()

    @kb.add('tab', filter=is_form)
    @kb.add('down', filter=is_form)
    def _(event):
        form_editor.next_field()
        invalidate()

    @kb.add('s-tab', filter=is_form)
    @kb.add('up', filter=is_form)
    def _(event):
        form_editor.prev_field()
        invalidate()

    @kb.add('enter', filter=is_form)
    def _(event):
        nonlocal busy, status_line
        editor = form_editor
        if busy:
            status_line = "Busy; try again when the sync finishes"
        elif editor.ready():
            busy = True
            status_line = "Saving..."
            _run_background(_submit_form_worker(editor))
        invalidate()

    @kb.add('escape', filter=is_form)
    def _(event):
        nonlocal form_editor, status_line
        form_editor = None
        status_line = "Cancelled"
        invalidate()

    @kb.add('backspace', filter=is_form)
    def _(event):
        form_editor.backspace()
        invalidate()

    @kb.add(Keys.Any, filter=is_form)
    def _(event):
        if event.data and event.data.isprintable():
            form_editor.type_text(event.data)
            invalidate()

    def _startup() -> None:
        nonlocal busy
        if client is not None:
            busy = True
            _run_background(_startup_worker())

    app = Application(layout=Layout(root), key_bindings=kb, full_screen=True,
                      style=Style.from_dict(UI_STYLE), mouse_support=False)
    app.run(pre_run=_startup)


# -----------------------------
# Utilities / Mock
# -----------------------------
def generate_mock_data(now: Optional[dt.datetime] = None) -> Tuple[List[Project], List[Issue]]:
    """Synthetic projects and issues (with journals) for offline demo & testing."""
    now = now or utcnow()
    projects = [
        Project(id=1, name="Alpha", identifier="alpha", description="Demo project",
                created_on=now - dt.timedelta(days=90), updated_on=now - dt.timedelta(days=10)),
        Project(id=2, name="Beta", identifier="beta", description="Second demo project",
                created_on=now - dt.timedelta(days=60), updated_on=now - dt.timedelta(days=5)),
        Project(id=3, name="Beta Docs", identifier="beta-docs", parent=IdName(2, "Beta"),
                created_on=now - dt.timedelta(days=30), updated_on=now - dt.timedelta(days=2)),
    ]
    statuses = [IdName(1, "New"), IdName(2, "In Progress"), IdName(4, "Feedback"),
                IdName(3, "Resolved"), IdName(5, "Closed")]
    priorities = [IdName(1, "Low"), IdName(2, "Normal"), IdName(3, "High"), IdName(4, "Urgent")]
    trackers = [IdName(1, "Bug"), IdName(2, "Feature"), IdName(3, "Support")]
    people = [IdName(1, "Ada Admin"), IdName(2, "Bob Builder"), IdName(3, "Cleo Coder")]
    issues: List[Issue] = []
    issue_id = 100
    for p_idx, project in enumerate(projects):
        for n in range(6):
            issue_id += 1
            created = now - dt.timedelta(days=40 - n * 3 - p_idx)
            updated = created + dt.timedelta(days=n + 1, hours=p_idx)
            status = statuses[(n + p_idx) % len(statuses)]
            issues.append(Issue(
                id=issue_id,
                project=IdName(project.id, project.name),
                tracker=trackers[n % len(trackers)],
                status=status,
                priority=priorities[(n * 2 + p_idx) % len(priorities)],
                author=people[0],
                assigned_to=people[(n + 1) % len(people)] if n % 3 else None,
                subject=f"{trackers[n % len(trackers)].name} {project.identifier}-{n + 1}",
                description=f"Demo issue {n + 1} for {project.name}",
                created_on=created,
                updated_on=min(updated, now),
                done_ratio=0 if status.name == "New" else 50 if status.name == "In Progress" else 100,
                journals=[Journal(
                    id=issue_id * 10,
                    user=people[1],
                    created_on=min(updated, now),
                    notes="Looking into it" if n % 2 else None,
                    details=[JournalDetail("attr", "status_id", "1", str(status.id))],
                )],
            ))
    return projects, issues


def seed_mock_data(cache: IssueCache) -> None:
    projects, issues = generate_mock_data()
    cache.upsert_projects(projects)
    cache.upsert_issues(issues)
    for issue in issues:
        cache.upsert_issue_with_journals(issue)


# -----------------------------
# CLI
# -----------------------------
def _print_summary(cache: IssueCache) -> None:
    projects = cache.query_projects()
    print(f"Projects: {len(projects)}  (last synced {_fmt_when(cache.global_sync_timestamp(PROJECTS_SYNC_KEY))})")
    for p in projects[:20]:
        marker = "*" if project_has_new_activity(p) else " "
        print(f" {marker} {p.name:<32} issues: {cache.count_issues(p.id):>5}  active: {_fmt_when(p.last_issue_activity)}")
    print(f"Issues cached: {cache.count_issues()}")


def _cli_sync(controller: SyncController, project_id: Optional[int]) -> int:
    try:
        outcome = controller.sync_all_projects()
        print(f"Synced {outcome.count} projects")
        for w in outcome.warnings:
            print(f"warning: {w}", file=sys.stderr)
        if project_id is not None:
            controller.begin(project_id)
            while controller.advance_one_page() is SyncStep.CONTINUE:
                print(controller.progress_message(), file=sys.stderr)
            if controller.last_cache_error is not None:
                print(f"warning: {controller.last_cache_error}", file=sys.stderr)
            print(f"Synced {controller.loaded_count} issues for project {project_id}")
    except SyncError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Redmine issue viewer with a local cache")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to YAML config")
    ap.add_argument("--db", default=DEFAULT_DB_PATH, help="Path to sqlite DB")
    ap.add_argument("--state", default=DEFAULT_STATE_PATH, help="Path to saved UI state (JSON)")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--log-file", default=DEFAULT_LOG_PATH, help="Log file path")
    ap.add_argument("--sync", action="store_true", help="Sync the project list (and --project issues) then exit")
    ap.add_argument("--project", type=int, help="With --sync: also sync issues for this project id")
    ap.add_argument("--no-ui", action="store_true", help="Print a summary of the cache and exit")
    args = ap.parse_args(argv)

    setup_logging(args.log_level, args.log_file)
    try:
        cfg = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        cache = IssueCache(args.db)
    except CacheError as e:
        print(str(e), file=sys.stderr)
        sys.exit(2)

    try:
        if cache.count_projects() == 0 and os.environ.get("MOCK_FETCH") == "1":
            logger.info("MOCK_FETCH enabled; seeding demo data")
            seed_mock_data(cache)

        client = RedmineClient.from_config(cfg) if cfg.is_configured() else None

        if args.sync:
            if client is None:
                print("Set redmine_url and api_key (or REDMINE_URL / REDMINE_API_KEY).", file=sys.stderr)
                sys.exit(1)
            sys.exit(_cli_sync(SyncController.from_config(cache, client, cfg), args.project))

        if args.no_ui:
            _print_summary(cache)
            return

        run_ui(cache, cfg, client, state_path=args.state)
    except CacheError as e:
        print(str(e), file=sys.stderr)
        sys.exit(2)
    finally:
        cache.close()


if __name__ == "__main__":
    main()

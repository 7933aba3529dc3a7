"""SQLite storage for mirrored repositories, pull requests, reviews and users.

Every function opens its own short-lived connection, so worker threads can
call them concurrently. Uniqueness is enforced by the schema; callers treat
sqlite3.IntegrityError on user creation as "someone else created it first".
"""

import sqlite3
from datetime import datetime
from pathlib import Path

from .models import RepositoryRecord
from .settings import DEFAULT_DB_PATH
from .utils import format_timestamp, parse_timestamp

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    login TEXT NOT NULL UNIQUE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS repositories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    github_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    private BOOLEAN DEFAULT FALSE,
    archived BOOLEAN DEFAULT FALSE,
    github_updated_at TEXT,  -- later of updatedAt / pushedAt
    last_successful_sync TEXT,  -- watermark, only written by update_watermark
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS pull_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    github_id TEXT NOT NULL UNIQUE,
    repository_id INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    author_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    number INTEGER NOT NULL,
    title TEXT,
    github_updated_at TEXT,
    closed_at TEXT,
    merged_at TEXT,
    additions INTEGER,
    deletions INTEGER,
    changed_files INTEGER,
    commits_count INTEGER,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (repository_id, number)
);

CREATE TABLE IF NOT EXISTS reviews (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    github_id TEXT NOT NULL UNIQUE,
    pull_request_id INTEGER NOT NULL REFERENCES pull_requests(id) ON DELETE CASCADE,
    author_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    state TEXT,
    submitted_at TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_pull_requests_author ON pull_requests(author_id);
CREATE INDEX IF NOT EXISTS idx_reviews_author ON reviews(author_id);
CREATE INDEX IF NOT EXISTS idx_reviews_pull_request ON reviews(pull_request_id);
"""

_COUNTABLE_TABLES = ("users", "repositories", "pull_requests", "reviews")


def init_db(db_path: Path | None = None) -> None:
    """Initialize the database schema."""
    path = db_path or DEFAULT_DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(SCHEMA)
    conn.commit()
    conn.close()


def get_db(db_path: Path | None = None) -> sqlite3.Connection:
    """Get a database connection."""
    path = db_path or DEFAULT_DB_PATH
    conn = sqlite3.connect(path, timeout=30)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def _latest(*values: str | None) -> str | None:
    parsed = [parse_timestamp(v) for v in values if v]
    return format_timestamp(max(parsed)) if parsed else None


def _row_to_repository(row: sqlite3.Row) -> RepositoryRecord:
    return RepositoryRecord(
        id=row["id"],
        github_id=row["github_id"],
        name=row["name"],
        url=row["url"],
        private=bool(row["private"]),
        archived=bool(row["archived"]),
        github_updated_at=parse_timestamp(row["github_updated_at"]),
        last_successful_sync=parse_timestamp(row["last_successful_sync"]),
    )


def upsert_repository(db_path: Path | None, node: dict) -> int:
    """Insert or update a repository from a GraphQL node. Returns its row id.

    The sync watermark is left untouched.
    """
    conn = get_db(db_path)
    try:
        conn.execute(
            """
            INSERT INTO repositories (github_id, name, url, private, archived, github_updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(github_id) DO UPDATE SET
                name = excluded.name,
                url = excluded.url,
                private = excluded.private,
                archived = excluded.archived,
                github_updated_at = excluded.github_updated_at,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                node["id"],
                node["name"],
                node["url"],
                bool(node.get("isPrivate")),
                bool(node.get("isArchived")),
                _latest(node.get("updatedAt"), node.get("pushedAt")),
            ),
        )
        row_id = conn.execute(
            "SELECT id FROM repositories WHERE github_id = ?", (node["id"],)
        ).fetchone()["id"]
        conn.commit()
    finally:
        conn.close()
    return row_id


def get_repository(db_path: Path | None, github_id: str) -> RepositoryRecord | None:
    conn = get_db(db_path)
    row = conn.execute("SELECT * FROM repositories WHERE github_id = ?", (github_id,)).fetchone()
    conn.close()
    return _row_to_repository(row) if row else None


def list_repositories(db_path: Path | None = None) -> list[RepositoryRecord]:
    """All known repositories, oldest first."""
    conn = get_db(db_path)
    rows = conn.execute("SELECT * FROM repositories ORDER BY id").fetchall()
    conn.close()
    return [_row_to_repository(row) for row in rows]


def update_watermark(db_path: Path | None, github_id: str, synced_at: datetime) -> None:
    """Record the start time of a fully successful crawl."""
    conn = get_db(db_path)
    conn.execute(
        "UPDATE repositories SET last_successful_sync = ?, updated_at = CURRENT_TIMESTAMP WHERE github_id = ?",
        (format_timestamp(synced_at), github_id),
    )
    conn.commit()
    conn.close()


def upsert_pull_request(db_path: Path | None, repository_id: int, node: dict, author_id: int | None) -> int:
    """Insert or update a pull request from a GraphQL node. Returns its row id."""
    conn = get_db(db_path)
    try:
        conn.execute(
            """
            INSERT INTO pull_requests
            (github_id, repository_id, author_id, number, title, github_updated_at, closed_at, merged_at,
             additions, deletions, changed_files, commits_count)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(github_id) DO UPDATE SET
                repository_id = excluded.repository_id,
                author_id = excluded.author_id,
                number = excluded.number,
                title = excluded.title,
                github_updated_at = excluded.github_updated_at,
                closed_at = excluded.closed_at,
                merged_at = excluded.merged_at,
                additions = excluded.additions,
                deletions = excluded.deletions,
                changed_files = excluded.changed_files,
                commits_count = excluded.commits_count,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                node["id"],
                repository_id,
                author_id,
                node["number"],
                node.get("title"),
                _latest(node.get("updatedAt")),
                _latest(node.get("closedAt")),
                _latest(node.get("mergedAt")),
                node.get("additions"),
                node.get("deletions"),
                node.get("changedFiles"),
                (node.get("commits") or {}).get("totalCount"),
            ),
        )
        row_id = conn.execute(
            "SELECT id FROM pull_requests WHERE github_id = ?", (node["id"],)
        ).fetchone()["id"]
        conn.commit()
    finally:
        conn.close()
    return row_id


def upsert_review(db_path: Path | None, pull_request_id: int, node: dict, author_id: int | None) -> int:
    """Insert or update a review from a GraphQL node. Returns its row id."""
    conn = get_db(db_path)
    try:
        conn.execute(
            """
            INSERT INTO reviews (github_id, pull_request_id, author_id, state, submitted_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(github_id) DO UPDATE SET
                pull_request_id = excluded.pull_request_id,
                author_id = excluded.author_id,
                state = excluded.state,
                submitted_at = excluded.submitted_at,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                node["id"],
                pull_request_id,
                author_id,
                node.get("state"),
                _latest(node.get("submittedAt")),
            ),
        )
        row_id = conn.execute("SELECT id FROM reviews WHERE github_id = ?", (node["id"],)).fetchone()["id"]
        conn.commit()
    finally:
        conn.close()
    return row_id


def find_user_id(db_path: Path | None, login: str) -> int | None:
    conn = get_db(db_path)
    row = conn.execute("SELECT id FROM users WHERE login = ?", (login,)).fetchone()
    conn.close()
    return row["id"] if row else None


def create_user(db_path: Path | None, login: str) -> int:
    """Insert a user. Raises sqlite3.IntegrityError if the login already exists."""
    conn = get_db(db_path)
    try:
        cursor = conn.execute("INSERT INTO users (login) VALUES (?)", (login,))
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def count_rows(db_path: Path | None, table: str) -> int:
    """Row count for one of the mirrored tables."""
    if table not in _COUNTABLE_TABLES:
        raise ValueError(f"Unknown table: {table}")
    conn = get_db(db_path)
    count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    conn.close()
    return count

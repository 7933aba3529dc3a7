"""Unit tests for db module."""

import sqlite3
from datetime import datetime, timezone

import pytest

from .db import (
    count_rows,
    create_user,
    find_user_id,
    get_db,
    get_repository,
    init_db,
    list_repositories,
    update_watermark,
    upsert_pull_request,
    upsert_repository,
    upsert_review,
)


@pytest.fixture
def db_path(tmp_path):
    p = tmp_path / "test.db"
    init_db(p)
    return p


def _repo_node(github_id="R_1", name="web", **overrides):
    node = {
        "id": github_id,
        "name": name,
        "url": f"https://github.com/acme/{name}",
        "isPrivate": False,
        "isArchived": False,
        "updatedAt": "2024-01-01T00:00:00Z",
        "pushedAt": "2024-02-01T00:00:00Z",
    }
    node.update(overrides)
    return node


def _pr_node(github_id="PR_1", number=1, **overrides):
    node = {
        "id": github_id,
        "number": number,
        "title": "Add feature",
        "updatedAt": "2024-03-01T10:00:00Z",
        "closedAt": None,
        "mergedAt": None,
        "author": {"login": "alice"},
        "additions": 10,
        "deletions": 2,
        "changedFiles": 3,
        "commits": {"totalCount": 4},
        "reviews": {"nodes": []},
    }
    node.update(overrides)
    return node


def describe_init_db():

    def it_creates_all_tables(db_path):
        conn = sqlite3.connect(db_path)
        cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
        tables = {row[0] for row in cursor.fetchall()}
        conn.close()
        assert {"users", "repositories", "pull_requests", "reviews"} <= tables

    def it_uses_wal_mode(db_path):
        conn = sqlite3.connect(db_path)
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        conn.close()
        assert mode == "wal"

    def it_is_idempotent(db_path):
        upsert_repository(db_path, _repo_node())
        init_db(db_path)
        assert count_rows(db_path, "repositories") == 1

    def it_creates_parent_directories(tmp_path):
        deep = tmp_path / "a" / "b" / "test.db"
        init_db(deep)
        assert deep.exists()


def describe_upsert_repository():

    def it_inserts_and_returns_the_row_id(db_path):
        row_id = upsert_repository(db_path, _repo_node())
        record = get_repository(db_path, "R_1")
        assert record.id == row_id
        assert record.name == "web"
        assert record.url == "https://github.com/acme/web"
        assert record.private is False
        assert record.last_successful_sync is None

    def it_is_keyed_by_github_id(db_path):
        first = upsert_repository(db_path, _repo_node())
        second = upsert_repository(db_path, _repo_node(name="web-renamed", isArchived=True))
        assert first == second
        assert count_rows(db_path, "repositories") == 1
        record = get_repository(db_path, "R_1")
        assert record.name == "web-renamed"
        assert record.archived is True

    def it_stores_the_later_of_updated_and_pushed(db_path):
        upsert_repository(db_path, _repo_node())
        record = get_repository(db_path, "R_1")
        assert record.github_updated_at == datetime(2024, 2, 1, tzinfo=timezone.utc)

    def it_handles_missing_upstream_timestamps(db_path):
        upsert_repository(db_path, _repo_node(updatedAt=None, pushedAt=None))
        assert get_repository(db_path, "R_1").github_updated_at is None

    def it_never_touches_the_watermark(db_path):
        upsert_repository(db_path, _repo_node())
        synced = datetime(2024, 5, 1, tzinfo=timezone.utc)
        update_watermark(db_path, "R_1", synced)

        upsert_repository(db_path, _repo_node(pushedAt="2024-06-01T00:00:00Z"))

        assert get_repository(db_path, "R_1").last_successful_sync == synced


def describe_list_repositories():

    def it_returns_all_in_insertion_order(db_path):
        for i in range(3):
            upsert_repository(db_path, _repo_node(github_id=f"R_{i}", name=f"repo{i}"))
        assert [r.name for r in list_repositories(db_path)] == ["repo0", "repo1", "repo2"]

    def it_returns_empty_for_a_new_database(db_path):
        assert list_repositories(db_path) == []


def describe_upsert_pull_request():

    @pytest.fixture
    def repository_id(db_path):
        return upsert_repository(db_path, _repo_node())

    def it_is_idempotent(db_path, repository_id):
        first = upsert_pull_request(db_path, repository_id, _pr_node(), None)
        second = upsert_pull_request(db_path, repository_id, _pr_node(title="Renamed"), None)
        assert first == second
        assert count_rows(db_path, "pull_requests") == 1
        conn = get_db(db_path)
        row = conn.execute("SELECT * FROM pull_requests").fetchone()
        conn.close()
        assert row["title"] == "Renamed"
        assert row["commits_count"] == 4
        assert row["github_updated_at"] == "2024-03-01T10:00:00+00:00"

    def it_enforces_number_uniqueness_within_a_repository(db_path, repository_id):
        upsert_pull_request(db_path, repository_id, _pr_node(), None)
        with pytest.raises(sqlite3.IntegrityError):
            upsert_pull_request(db_path, repository_id, _pr_node(github_id="PR_other"), None)

    def it_links_the_author(db_path, repository_id):
        user_id = create_user(db_path, "alice")
        upsert_pull_request(db_path, repository_id, _pr_node(), user_id)
        conn = get_db(db_path)
        row = conn.execute("SELECT author_id FROM pull_requests").fetchone()
        conn.close()
        assert row["author_id"] == user_id


def describe_upsert_review():

    def it_is_idempotent(db_path):
        repository_id = upsert_repository(db_path, _repo_node())
        pr_id = upsert_pull_request(db_path, repository_id, _pr_node(), None)
        review = {"id": "RV_1", "state": "APPROVED", "submittedAt": "2024-03-01T11:00:00Z"}

        upsert_review(db_path, pr_id, review, None)
        upsert_review(db_path, pr_id, {**review, "state": "DISMISSED"}, None)

        assert count_rows(db_path, "reviews") == 1
        conn = get_db(db_path)
        row = conn.execute("SELECT state FROM reviews").fetchone()
        conn.close()
        assert row["state"] == "DISMISSED"


def describe_cascades():

    def it_deletes_pull_requests_and_reviews_with_their_repository(db_path):
        repository_id = upsert_repository(db_path, _repo_node())
        pr_id = upsert_pull_request(db_path, repository_id, _pr_node(), None)
        upsert_review(db_path, pr_id, {"id": "RV_1", "state": "APPROVED"}, None)

        conn = get_db(db_path)
        conn.execute("DELETE FROM repositories WHERE id = ?", (repository_id,))
        conn.commit()
        conn.close()

        assert count_rows(db_path, "pull_requests") == 0
        assert count_rows(db_path, "reviews") == 0

    def it_keeps_pull_requests_when_their_author_is_deleted(db_path):
        repository_id = upsert_repository(db_path, _repo_node())
        user_id = create_user(db_path, "alice")
        upsert_pull_request(db_path, repository_id, _pr_node(), user_id)

        conn = get_db(db_path)
        conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        conn.commit()
        row = conn.execute("SELECT author_id FROM pull_requests").fetchone()
        conn.close()

        assert row["author_id"] is None


def describe_users():

    def it_creates_and_finds_by_login(db_path):
        user_id = create_user(db_path, "alice")
        assert find_user_id(db_path, "alice") == user_id

    def it_returns_none_for_unknown_logins(db_path):
        assert find_user_id(db_path, "nobody") is None

    def it_rejects_duplicate_logins(db_path):
        create_user(db_path, "alice")
        with pytest.raises(sqlite3.IntegrityError):
            create_user(db_path, "alice")


def describe_count_rows():

    def it_rejects_unknown_tables(db_path):
        with pytest.raises(ValueError):
            count_rows(db_path, "sqlite_master")

"""Crawl orchestration: discover repositories, pick the stale ones, mirror their pull requests."""

import sqlite3
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from pathlib import Path

from .db import (
    create_user,
    find_user_id,
    list_repositories,
    update_watermark,
    upsert_pull_request,
    upsert_repository,
    upsert_review,
)
from .graphql import GraphQLClient
from .models import CrawlInterrupted, CrawlStats, RepositoryCrawlResult, RepositoryRecord
from .pacing import RequestPacer
from .utils import parse_timestamp, utcnow

DEFAULT_MAX_WORKERS = 10
DEFAULT_SHUTDOWN_GRACE_SECONDS = 30.0
INTER_PAGE_DELAY = 0.5


def _log(msg: str):
    sys.stderr.write(f"[crawl] {msg}\n")
    sys.stderr.flush()


def needs_crawl(record: RepositoryRecord) -> bool:
    """True if the repository was never synced or changed upstream since."""
    if record.last_successful_sync is None:
        return True
    return record.github_updated_at > record.last_successful_sync


def select_repositories(records: list[RepositoryRecord]) -> list[RepositoryRecord]:
    """Repositories that need a crawl. Errors while deciding select the repository."""
    selected = []
    for record in records:
        try:
            needed = needs_crawl(record)
        except Exception as exc:
            _log(f"Error checking update status for {record.name}: {exc}")
            needed = True
        if needed:
            selected.append(record)
        else:
            _log(f"Skipping {record.name} - no updates since last run")
    return selected


class UserResolver:
    """Find-or-create users by login without duplicate-key races between workers."""

    def __init__(self, db_path: Path | None):
        self._db_path = db_path
        self._lock = threading.Lock()

    def resolve(self, login: str | None) -> int | None:
        if not login:
            return None
        user_id = find_user_id(self._db_path, login)
        if user_id is not None:
            return user_id
        with self._lock:
            # Another worker may have created it while we waited.
            user_id = find_user_id(self._db_path, login)
            if user_id is not None:
                return user_id
            try:
                return create_user(self._db_path, login)
            except sqlite3.IntegrityError:
                user_id = find_user_id(self._db_path, login)
                if user_id is None:
                    raise
                return user_id


class CrawlOrchestrator:
    """Mirror an organization's pull requests and reviews into SQLite.

    Phase 1 discovers repositories, phase 2 selects the ones that changed
    since their watermark, phase 3 crawls them on a worker pool. A
    repository's watermark only moves after its crawl finished cleanly.
    """

    def __init__(
        self,
        client: GraphQLClient,
        db_path: Path | None = None,
        org: str = "vercel",
        max_workers: int = DEFAULT_MAX_WORKERS,
        pacer: RequestPacer | None = None,
        shutdown_grace_seconds: float = DEFAULT_SHUTDOWN_GRACE_SECONDS,
    ):
        self.client = client
        self.db_path = db_path
        self.org = org
        self.max_workers = max_workers
        self.pacer = pacer or RequestPacer()
        self.users = UserResolver(db_path)
        self.shutdown_grace_seconds = shutdown_grace_seconds

    def discover_repositories(self) -> int:
        """Store every repository of the organization. Returns how many were seen."""
        print(f"Fetching repositories for {self.org}...", flush=True)
        count = 0
        cursor = None
        while True:
            page = self.pacer.call(self.client.fetch_organization_repositories_page, self.org, cursor)
            for node in page.nodes:
                upsert_repository(self.db_path, node)
                count += 1
            print(f"  {count} repositories stored. Has next page: {page.has_next_page}", flush=True)
            if page.degraded:
                _log(
                    f"Repository list for {self.org} returned an unreadable page after {count} repositories; "
                    "discovery is incomplete, later repositories are only crawled if already known"
                )
                break
            if not page.has_next_page:
                break
            cursor = page.end_cursor
        return count

    def _save_pull_request(self, record: RepositoryRecord, node: dict, result: RepositoryCrawlResult):
        author_id = self.users.resolve((node.get("author") or {}).get("login"))
        pull_request_id = upsert_pull_request(self.db_path, record.id, node, author_id)
        result.pull_requests += 1

        for review in (node.get("reviews") or {}).get("nodes") or []:
            reviewer_id = self.users.resolve((review.get("author") or {}).get("login"))
            upsert_review(self.db_path, pull_request_id, review, reviewer_id)
            result.reviews += 1

    def crawl_repository(self, record: RepositoryRecord) -> RepositoryCrawlResult:
        """Mirror one repository's pull requests, newest update first.

        Stops at the first pull request not updated since the watermark;
        everything after it on this and later pages is older.
        """
        thread = threading.current_thread().name
        _log(f"[{thread}] Processing repository: {record.name}")
        result = RepositoryCrawlResult(repository=record, started_at=utcnow())
        watermark = record.last_successful_sync
        cursor = None

        while True:
            page = self.pacer.call(self.client.fetch_pull_requests_page, self.org, record.name, cursor)
            result.pages += 1
            if page.degraded:
                result.incomplete = True

            for node in page.nodes:
                updated_at = parse_timestamp(node.get("updatedAt"))
                if watermark is not None and updated_at is not None and updated_at <= watermark:
                    result.early_terminated = True
                    _log(
                        f"[{thread}] Finished {record.name} - {result.pull_requests} PRs processed "
                        f"(early termination at PRs older than {watermark.isoformat()})"
                    )
                    return result
                self._save_pull_request(record, node, result)

            _log(
                f"[{thread}] Processed {result.pull_requests} updated PRs for {record.name}. "
                f"Has next page: {page.has_next_page}"
            )
            if not page.has_next_page:
                break
            if self.pacer.stop_requested.is_set():
                raise CrawlInterrupted(f"stopped after page {result.pages}")
            cursor = page.end_cursor
            time.sleep(INTER_PAGE_DELAY)

        _log(f"[{thread}] Finished {record.name} - {result.pull_requests} PRs processed (complete)")
        return result

    def _record_outcome(self, record: RepositoryRecord, future: Future, stats: CrawlStats):
        try:
            result = future.result()
        except CrawlInterrupted:
            stats.interrupted += 1
            _log(f"{record.name} interrupted; keeping previous watermark")
            return
        except Exception as exc:
            stats.failed += 1
            stats.failures[record.name] = str(exc)
            _log(f"Error processing repository {record.name}: {exc}")
            return

        stats.pull_requests += result.pull_requests
        stats.reviews += result.reviews
        if result.incomplete:
            stats.incomplete += 1
            _log(f"{record.name} returned unreadable pages; keeping previous watermark")
            return

        try:
            update_watermark(self.db_path, record.github_id, result.started_at)
        except sqlite3.Error as exc:
            stats.failed += 1
            stats.failures[record.name] = f"could not update watermark: {exc}"
            _log(f"Error updating last successful run for {record.name}: {exc}")
            return

        stats.succeeded += 1
        done = stats.succeeded + stats.failed + stats.incomplete
        print(f"Completed {done}/{stats.selected} repositories ({record.name})", flush=True)

    def crawl_all(self, records: list[RepositoryRecord]) -> CrawlStats:
        """Crawl repositories concurrently; one failure never stops the others."""
        stats = CrawlStats(selected=len(records))
        if not records:
            return stats

        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="crawl")
        futures = {executor.submit(self.crawl_repository, record): record for record in records}
        recorded: set[Future] = set()
        try:
            for future in as_completed(futures):
                self._record_outcome(futures[future], future, stats)
                recorded.add(future)
        except KeyboardInterrupt:
            _log(f"Interrupted. Waiting up to {self.shutdown_grace_seconds:.0f}s for in-flight repositories...")
            # Waiting workers wake now; the rest stop once their in-flight request returns.
            self.pacer.stop()
            self.client.stop()
            executor.shutdown(wait=False, cancel_futures=True)
            done, not_done = wait(futures, timeout=self.shutdown_grace_seconds)
            for future in done - recorded:
                if future.cancelled():
                    stats.interrupted += 1
                else:
                    self._record_outcome(futures[future], future, stats)
            stats.interrupted += len(not_done)
            return stats

        executor.shutdown(wait=True)
        return stats

    def run(self) -> CrawlStats:
        """Discover, select and crawl. Discovery failures abort the run."""
        print(f"Starting crawl of {self.org} with {self.max_workers} workers...", flush=True)
        discovered = self.discover_repositories()

        repositories = list_repositories(self.db_path)
        print(f"Processing {len(repositories)} repositories across {self.max_workers} workers", flush=True)
        selected = select_repositories(repositories)
        print(f"Filtered down to {len(selected)} repositories that need updates", flush=True)

        stats = self.crawl_all(selected)
        stats.discovered = discovered
        print("Crawl completed!", flush=True)
        return stats

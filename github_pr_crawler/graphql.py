"""GraphQL client for mirroring repositories, pull requests and reviews from GitHub."""

import sys
import threading
from datetime import timedelta

import httpx

from .models import (
    ASSUMED_FULL_BUDGET,
    BASE_DELAY,
    MAX_ATTEMPTS,
    MAX_DELAY,
    PAGE_SIZE,
    PRIMARY,
    PRIMARY_RATE_LIMIT_COOLDOWN,
    RATE_LIMIT_RESET_MARGIN,
    RATE_LIMIT_SAFETY_THRESHOLD,
    SECONDARY,
    SECONDARY_RATE_LIMIT_COOLDOWN,
    CrawlInterrupted,
    Page,
    RateLimitBudget,
    RateLimitStatus,
    RetryLater,
)
from .settings import get_settings
from .utils import parse_timestamp, utcnow

GRAPHQL_URL = "https://api.github.com/graphql"

CONNECT_TIMEOUT = 60.0
READ_TIMEOUT = 90.0

# Checked in this order: secondary messages also contain "rate limit".
SECONDARY_RATE_LIMIT_MARKERS = ("abuse", "secondary rate limit")
PRIMARY_RATE_LIMIT_MARKERS = ("rate limit", "api rate limit exceeded")

REPOSITORIES_QUERY = f"""
query($org: String!, $after: String) {{
  rateLimit {{ cost remaining resetAt }}
  organization(login: $org) {{
    repositories(first: {PAGE_SIZE}, privacy: PUBLIC, after: $after) {{
      pageInfo {{ hasNextPage endCursor }}
      nodes {{ id name url isPrivate isArchived updatedAt pushedAt }}
    }}
  }}
}}
"""

PULL_REQUESTS_QUERY = f"""
query($owner: String!, $name: String!, $after: String) {{
  rateLimit {{ cost remaining resetAt }}
  repository(owner: $owner, name: $name) {{
    pullRequests(
      first: {PAGE_SIZE}
      states: [OPEN, CLOSED, MERGED]
      orderBy: {{field: UPDATED_AT, direction: DESC}}
      after: $after
    ) {{
      pageInfo {{ hasNextPage endCursor }}
      nodes {{
        id
        number
        title
        updatedAt
        closedAt
        mergedAt
        author {{ login }}
        additions
        deletions
        changedFiles
        commits {{ totalCount }}
        reviews(first: {PAGE_SIZE}) {{
          pageInfo {{ hasNextPage endCursor }}
          nodes {{
            id
            author {{ login }}
            state
            submittedAt
          }}
        }}
      }}
    }}
  }}
}}
"""

RATE_LIMIT_QUERY = """
query {
  rateLimit { cost remaining resetAt limit }
}
"""


class GraphQLError(RuntimeError):
    """GraphQL reported errors that are not rate limiting."""

    def __init__(self, message: str, errors: list | None = None):
        super().__init__(message)
        self.errors = errors or []


class ServerError(RuntimeError):
    """HTTP 5xx from the GraphQL endpoint."""

    def __init__(self, status_code: int, message: str | None = None):
        super().__init__(message or f"Server error {status_code}")
        self.status_code = status_code


class _MalformedResponse(ValueError):
    pass


def _log(msg: str):
    sys.stderr.write(f"[graphql] {msg}\n")
    sys.stderr.flush()


def backoff_delay(attempt: int) -> float:
    """Delay in seconds before retrying after failed attempt `attempt` (1-indexed)."""
    return min(BASE_DELAY * 2 ** (attempt - 1), MAX_DELAY)


def _error_message(error) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or "")
    return str(error)


def _to_page(connection: dict) -> Page:
    page_info = connection.get("pageInfo") or {}
    return Page(
        nodes=connection.get("nodes") or [],
        has_next_page=bool(page_info.get("hasNextPage")),
        end_cursor=page_info.get("endCursor"),
    )


class GraphQLClient:
    """Rate-governed client for the three fixed crawler queries.

    Safe to share between worker threads: the budget gate and the budget
    update run under one lock per client instance.
    """

    def __init__(self, token: str | None = None):
        token = token or get_settings().github_token
        if not token:
            raise RuntimeError("GITHUB_TOKEN is not set")
        self._client = httpx.Client(
            headers={
                "Authorization": f"bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(READ_TIMEOUT, connect=CONNECT_TIMEOUT),
        )
        self._budget_lock = threading.Lock()
        self.budget = RateLimitBudget(
            remaining=ASSUMED_FULL_BUDGET,
            reset_at=utcnow() + timedelta(hours=1),
        )
        self._stats_lock = threading.Lock()
        self.queries = 0
        self.retries = 0
        self.rate_limit_hits = 0
        self.stop_requested = threading.Event()

    def stop(self):
        """Wake any budget wait, retry delay or cooldown; they raise CrawlInterrupted."""
        self.stop_requested.set()

    def _pause(self, seconds: float):
        if self.stop_requested.wait(seconds):
            raise CrawlInterrupted("stop requested while waiting")

    def _wait_for_budget(self):
        """Block while the budget is at or below the safety threshold."""
        with self._budget_lock:
            if self.budget.remaining > RATE_LIMIT_SAFETY_THRESHOLD:
                return
            wait = max((self.budget.reset_at - utcnow()).total_seconds() + RATE_LIMIT_RESET_MARGIN, 0)
            if wait > 0:
                _log(
                    f"Rate limit low ({self.budget.remaining} points remaining). "
                    f"Sleeping for {wait:.0f}s..."
                )
                self._pause(wait)
            # Assume a fresh window instead of spending a query to re-check.
            self.budget.remaining = ASSUMED_FULL_BUDGET
            self.budget.reset_at = utcnow() + timedelta(hours=1)

    def _record_budget(self, body: dict):
        rate_limit = (body.get("data") or {}).get("rateLimit")
        if not rate_limit:
            return
        with self._budget_lock:
            self.budget.last_cost = rate_limit.get("cost") or 0
            self.budget.remaining = rate_limit.get("remaining", self.budget.remaining)
            self.budget.reset_at = parse_timestamp(rate_limit.get("resetAt")) or self.budget.reset_at
        _log(f"Query cost: {self.budget.last_cost} points, remaining: {self.budget.remaining} points")

    def _retry_wait(self, label: str, exc: Exception, attempt: int):
        delay = backoff_delay(attempt)
        with self._stats_lock:
            self.retries += 1
        _log(f"{label} ({exc}) on attempt {attempt}/{MAX_ATTEMPTS}. Retrying in {delay}s...")
        self._pause(delay)

    def _execute(self, query: str, variables: dict | None = None, check_budget: bool = True) -> dict:
        """POST a query, retrying transport, server and parse failures.

        Returns the parsed body. A body that never parses degrades to
        {"data": None, "errors": []} once attempts are exhausted.
        """
        payload = {"query": query, "variables": variables or {}}
        for attempt in range(1, MAX_ATTEMPTS + 1):
            if check_budget:
                self._wait_for_budget()
            try:
                resp = self._client.post(GRAPHQL_URL, json=payload)
                with self._stats_lock:
                    self.queries += 1
                if resp.status_code >= 500:
                    raise ServerError(resp.status_code)
                try:
                    body = resp.json()
                except ValueError as exc:
                    raise _MalformedResponse(str(exc)) from exc
                if not isinstance(body, dict):
                    raise _MalformedResponse(f"expected a JSON object, got {type(body).__name__}")
            except httpx.TimeoutException as exc:
                if attempt == MAX_ATTEMPTS:
                    _log(f"Max attempts ({MAX_ATTEMPTS}) exceeded for network timeout: {exc}")
                    raise
                self._retry_wait("Network timeout", exc, attempt)
                continue
            except ServerError as exc:
                if attempt == MAX_ATTEMPTS:
                    _log(f"Max attempts ({MAX_ATTEMPTS}) exceeded for server error {exc.status_code}")
                    raise ServerError(
                        exc.status_code,
                        f"Server error {exc.status_code}: retries exhausted",
                    ) from exc
                self._retry_wait(f"Server error {exc.status_code}", exc, attempt)
                continue
            except _MalformedResponse as exc:
                if attempt == MAX_ATTEMPTS:
                    _log(f"Max attempts ({MAX_ATTEMPTS}) exceeded for JSON parsing error: {exc}")
                    return {"data": None, "errors": []}
                self._retry_wait("JSON parsing error", exc, attempt)
                continue
            except httpx.HTTPError as exc:
                if attempt == MAX_ATTEMPTS:
                    _log(f"Max attempts ({MAX_ATTEMPTS}) exceeded for unexpected error: {exc}")
                    raise
                self._retry_wait(f"Unexpected error {type(exc).__name__}", exc, attempt)
                continue

            if resp.status_code >= 400 and not body.get("errors"):
                # REST-style error body (403/429/401): classify like GraphQL errors.
                message = body.get("message") or f"HTTP {resp.status_code}"
                body = {"data": None, "errors": [{"message": message, "status": resp.status_code}]}
            self._record_budget(body)
            return body

        raise AssertionError("unreachable")

    def _classify_errors(self, errors: list) -> RetryLater:
        """Sleep through rate-limit cooldowns; raise anything else."""
        _log(f"GraphQL errors: {errors}")
        messages = [_error_message(e).lower() for e in errors]

        if any(marker in m for m in messages for marker in SECONDARY_RATE_LIMIT_MARKERS):
            with self._stats_lock:
                self.rate_limit_hits += 1
            _log(f"Secondary rate limit (abuse detection) triggered. Waiting {SECONDARY_RATE_LIMIT_COOLDOWN}s...")
            self._pause(SECONDARY_RATE_LIMIT_COOLDOWN)
            return RetryLater(SECONDARY, SECONDARY_RATE_LIMIT_COOLDOWN)

        rate_limited = any(isinstance(e, dict) and e.get("type") == "RATE_LIMITED" for e in errors)
        if rate_limited or any(marker in m for m in messages for marker in PRIMARY_RATE_LIMIT_MARKERS):
            with self._stats_lock:
                self.rate_limit_hits += 1
            _log(f"GraphQL rate limit exceeded. Waiting {PRIMARY_RATE_LIMIT_COOLDOWN}s...")
            self._pause(PRIMARY_RATE_LIMIT_COOLDOWN)
            return RetryLater(PRIMARY, PRIMARY_RATE_LIMIT_COOLDOWN)

        raise GraphQLError(f"API request failed: {errors}", errors)

    def _page_or_retry(self, body: dict, *path: str) -> Page | RetryLater:
        connection = body.get("data")
        for key in path:
            connection = (connection or {}).get(key)
        if connection is not None:
            return _to_page(connection)

        errors = body.get("errors")
        if errors:
            return self._classify_errors(errors)
        if "errors" in body:
            _log("Invalid JSON response after retries, treating as an empty page")
            return Page(nodes=[], degraded=True)
        raise GraphQLError(f"API request failed: {body}")

    def fetch_organization_repositories_page(self, org: str, cursor: str | None = None) -> Page | RetryLater:
        """One page of an organization's public repositories."""
        body = self._execute(REPOSITORIES_QUERY, {"org": org, "after": cursor})
        return self._page_or_retry(body, "organization", "repositories")

    def fetch_pull_requests_page(self, owner: str, repo: str, cursor: str | None = None) -> Page | RetryLater:
        """One page of pull requests, most recently updated first, each with its first 100 reviews."""
        body = self._execute(PULL_REQUESTS_QUERY, {"owner": owner, "name": repo, "after": cursor})
        result = self._page_or_retry(body, "repository", "pullRequests")
        if isinstance(result, Page):
            for node in result.nodes:
                reviews_info = (node.get("reviews") or {}).get("pageInfo") or {}
                if reviews_info.get("hasNextPage"):
                    _log(f"{owner}/{repo}#{node.get('number')} has more than {PAGE_SIZE} reviews, keeping the first {PAGE_SIZE}")
        return result

    def fetch_rate_limit_status(self) -> RateLimitStatus | None:
        """Current budget; bypasses the budget gate."""
        body = self._execute(RATE_LIMIT_QUERY, check_budget=False)
        rate_limit = (body.get("data") or {}).get("rateLimit")
        if not rate_limit:
            if body.get("errors"):
                _log(f"Could not read rate limit status: {body['errors']}")
            return None
        return RateLimitStatus(
            cost=rate_limit.get("cost") or 0,
            remaining=rate_limit.get("remaining") or 0,
            reset_at=parse_timestamp(rate_limit.get("resetAt")),
            limit=rate_limit.get("limit") or 0,
        )

    def close(self):
        self._client.close()

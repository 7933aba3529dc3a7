"""Data models and constants for pull request crawling."""

from dataclasses import dataclass, field
from datetime import datetime

# GraphQL primary limit: 5,000 points/hour. Queries cost ~1 point each, so 50 is a safe floor.
RATE_LIMIT_SAFETY_THRESHOLD = 50
RATE_LIMIT_RESET_MARGIN = 60  # seconds added on top of resetAt
ASSUMED_FULL_BUDGET = 5000

MAX_ATTEMPTS = 10
BASE_DELAY = 3
MAX_DELAY = 300

SECONDARY_RATE_LIMIT_COOLDOWN = 180
PRIMARY_RATE_LIMIT_COOLDOWN = 3600

PAGE_SIZE = 100  # GraphQL connection maximum

SECONDARY = "secondary"
PRIMARY = "primary"


@dataclass
class RateLimitBudget:
    """Primary rate-limit budget as last reported by the API."""

    remaining: int
    reset_at: datetime
    last_cost: int = 0


@dataclass
class RateLimitStatus:
    cost: int
    remaining: int
    reset_at: datetime
    limit: int


@dataclass
class Page:
    """One page of a GraphQL connection."""

    nodes: list[dict]
    has_next_page: bool = False
    end_cursor: str | None = None
    degraded: bool = False  # body never parsed; no data rather than an empty connection


@dataclass(frozen=True)
class RetryLater:
    """No page was produced; the same request should be issued again.

    `reason` is SECONDARY or PRIMARY, `cooldown` the seconds already waited.
    """

    reason: str
    cooldown: float


@dataclass
class RepositoryRecord:
    id: int
    github_id: str
    name: str
    url: str
    private: bool = False
    archived: bool = False
    github_updated_at: datetime | None = None
    last_successful_sync: datetime | None = None


@dataclass
class RepositoryCrawlResult:
    repository: RepositoryRecord
    started_at: datetime
    pull_requests: int = 0
    reviews: int = 0
    pages: int = 0
    early_terminated: bool = False
    incomplete: bool = False  # a page degraded to no data


@dataclass
class CrawlStats:
    discovered: int = 0
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    incomplete: int = 0
    interrupted: int = 0
    pull_requests: int = 0
    reviews: int = 0
    failures: dict[str, str] = field(default_factory=dict)


class CrawlInterrupted(RuntimeError):
    """Raised to workers once a stop was requested."""

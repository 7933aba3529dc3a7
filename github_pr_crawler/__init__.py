"""Mirror an organization's pull requests and reviews from GitHub.

Incremental: each repository keeps a sync watermark and only pull requests
updated since then are fetched, newest first.
"""

from .cli import main
from .crawler import CrawlOrchestrator
from .graphql import GraphQLClient
from .models import CrawlStats

__all__ = ["main", "CrawlOrchestrator", "GraphQLClient", "CrawlStats"]

if __name__ == "__main__":
    main()

"""CLI commands for pull request crawling."""

import argparse
import json
import sys
from pathlib import Path


def _print_report(stats) -> None:
    print(
        f"\nDone: {stats.discovered} repositories discovered, {stats.selected} selected, "
        f"{stats.succeeded} succeeded, {stats.failed} failed, "
        f"{stats.pull_requests} pull requests, {stats.reviews} reviews"
    )
    if stats.incomplete:
        print(f"{stats.incomplete} repositories returned unreadable pages (watermark kept)")
    if stats.interrupted:
        print(f"{stats.interrupted} repositories did not finish before shutdown")
    for name, message in sorted(stats.failures.items()):
        print(f"  FAILED {name}: {message}")


def main():
    parser = argparse.ArgumentParser(
        description="Mirror an organization's pull requests and reviews from GitHub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Database path (default: DB_PATH or results/pull_requests.db)",
    )
    parser.add_argument(
        "--org",
        default=None,
        help="GitHub organization (default: GITHUB_ORG or vercel)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    crawl_parser = subparsers.add_parser(
        "crawl",
        help="Discover repositories and mirror pull requests updated since the last run",
    )
    crawl_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Repositories crawled concurrently (default: 10)",
    )
    crawl_parser.add_argument(
        "--max-requests",
        type=int,
        default=None,
        help="API requests in flight at once, across all workers (default: 10)",
    )

    subparsers.add_parser(
        "rate-limit",
        help="Show the current GraphQL rate limit status",
    )

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    from .settings import MissingSettingsError, get_settings, require_settings

    settings = get_settings()
    if args.db:
        settings = settings.model_copy(update={"db_path": args.db})
    try:
        require_settings(settings)
    except MissingSettingsError as e:
        print(e, file=sys.stderr)
        print("Please set these in your .env file", file=sys.stderr)
        sys.exit(1)

    from .graphql import GraphQLClient

    org = args.org or settings.github_org
    client = GraphQLClient(token=settings.github_token)
    try:
        if args.command == "rate-limit":
            status = client.fetch_rate_limit_status()
            if status is None:
                print("Rate limit status unavailable", file=sys.stderr)
                sys.exit(1)
            json.dump(
                {
                    "cost": status.cost,
                    "remaining": status.remaining,
                    "limit": status.limit,
                    "reset_at": status.reset_at.isoformat() if status.reset_at else None,
                },
                sys.stdout,
                indent=2,
            )
            sys.stdout.write("\n")
        elif args.command == "crawl":
            from .crawler import CrawlOrchestrator
            from .db import init_db
            from .pacing import RequestPacer

            init_db(settings.db_path)
            status = client.fetch_rate_limit_status()
            if status is not None:
                print(
                    f"Rate limit: {status.remaining}/{status.limit} points remaining, "
                    f"resets at {status.reset_at.isoformat() if status.reset_at else 'unknown'}",
                    flush=True,
                )

            pacer = RequestPacer(
                max_concurrent_requests=args.max_requests or settings.max_concurrent_requests,
                request_interval=settings.request_interval,
            )
            orchestrator = CrawlOrchestrator(
                client,
                db_path=settings.db_path,
                org=org,
                max_workers=args.workers or settings.max_workers,
                pacer=pacer,
                shutdown_grace_seconds=settings.shutdown_grace_seconds,
            )
            stats = orchestrator.run()
            _print_report(stats)
    finally:
        client.close()


if __name__ == "__main__":
    main()

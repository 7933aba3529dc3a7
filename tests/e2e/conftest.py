"""E2E test fixtures: real API, isolated temp directories."""

import os
import subprocess
import sys

import pytest


def _run_cli(*args, db_path=None, timeout=600):
    """Run the github-pr-crawl CLI and return CompletedProcess."""
    cmd = [sys.executable, "-m", "github_pr_crawler.cli"]
    if db_path:
        cmd.extend(["--db", str(db_path)])
    cmd.extend(args)
    return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, env=os.environ.copy())


@pytest.fixture
def e2e_db(tmp_path):
    """Isolated temp SQLite path (NOT results/, to avoid polluting a real mirror)."""
    return tmp_path / "e2e.db"


@pytest.fixture
def e2e_org():
    """A small organization to crawl. Set E2E_ORG; crawling the default org takes hours."""
    org = os.environ.get("E2E_ORG")
    if not org:
        pytest.skip("E2E_ORG required for live crawl tests")
    return org


@pytest.fixture
def run_cli():
    return _run_cli

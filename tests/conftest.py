"""
Shared pytest fixtures for the git-rescue test suite.

Provides:
    - git_repo: a temporary repository on branch ``main`` with one commit
    - settings: RescueSettings pointing backups at a temporary directory
    - clean_rescue_env: strips GIT_RESCUE_* variables for every test
    - run_git: helper that runs git in a repository and returns stdout
    - age_file: helper that backdates a file's mtime
"""

import os
import shutil
import subprocess
import sys
import time
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Ensure gitrescue/ is importable regardless of where pytest is invoked
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).resolve().parent.parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from gitrescue.config import load_settings  # noqa: E402

GIT = shutil.which("git")

requires_git = pytest.mark.skipif(GIT is None, reason="git executable not available")


def run_git(repo, *args) -> str:
    """Run ``git <args>`` in *repo* and return stdout (raises on failure)."""
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    proc = subprocess.run(
        ["git", *args],
        cwd=str(repo),
        capture_output=True,
        text=True,
        check=True,
        env=env,
    )
    return proc.stdout


def age_file(path, seconds: float) -> None:
    """Set *path*'s access and modification time *seconds* into the past."""
    past = time.time() - seconds
    os.utime(path, (past, past))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def git_repo(tmp_path):
    """Create a repository with a single commit on ``main``.

    Returns the repository root as a ``pathlib.Path``.
    """
    if GIT is None:
        pytest.skip("git executable not available")

    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init", "-q")
    run_git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(repo, "config", "user.email", "tests@example.com")
    run_git(repo, "config", "user.name", "Test Runner")
    run_git(repo, "config", "commit.gpgsign", "false")

    (repo / "README.md").write_text("# sample\n", encoding="utf-8")
    (repo / "src").mkdir()
    (repo / "src" / "app.py").write_text("print('hello')\n", encoding="utf-8")
    run_git(repo, "add", "-A")
    run_git(repo, "commit", "-q", "-m", "initial commit")
    return repo


@pytest.fixture
def head_commit(git_repo):
    return run_git(git_repo, "rev-parse", "HEAD").strip()


@pytest.fixture(autouse=True)
def clean_rescue_env(monkeypatch):
    """Keep GIT_RESCUE_* variables from the caller's shell out of every test."""
    for key in list(os.environ):
        if key.startswith("GIT_RESCUE_"):
            monkeypatch.delenv(key)


@pytest.fixture
def settings(tmp_path):
    """Settings with backups under tmp_path and no disk-space floor."""
    return load_settings(
        backup_dir=str(tmp_path / "backups"),
        min_free_disk_bytes=0,
    )

"""Shared fixtures for integration tests that drive a real git binary."""

import shutil
import subprocess
from pathlib import Path

import pytest


def git(cwd: Path, *args: str) -> str:
    """Run git synchronously for test setup; raises on failure."""
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


def commit_file(repo: Path, relative: str, content: str, message: str) -> None:
    path = repo / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    git(repo, "add", relative)
    git(repo, "commit", "-m", message)


def lane_branch(repo: Path, branch: str, files: dict[str, str]) -> None:
    """Create ``branch`` from main with one commit touching ``files``."""
    git(repo, "checkout", "-b", branch, "main")
    for relative, content in files.items():
        path = repo / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        git(repo, "add", relative)
    git(repo, "commit", "-m", f"work on {branch}")
    git(repo, "checkout", "main")


@pytest.fixture
def repo(tmp_path, monkeypatch):
    """A repository with one commit on ``main`` and an isolated git identity."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Warroom Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "warroom@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Warroom Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "warroom@example.com")

    path = tmp_path / "repo"
    path.mkdir()
    git(path, "init")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    commit_file(path, "src/a.ts", "export const a = 1;\n", "initial")
    return path

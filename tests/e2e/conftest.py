"""Shared helpers for end-to-end tests against a real Docker daemon."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest


def docker_available() -> bool:
    if shutil.which("docker") is None or shutil.which("git") is None:
        return False
    probe = subprocess.run(["docker", "info"], capture_output=True, check=False)
    return probe.returncode == 0


requires_docker = pytest.mark.skipif(not docker_available(), reason="docker daemon and git required")


def make_git_repo(root: Path, files: dict[str, str]) -> Path:
    """Create and commit a repository holding *files* under *root*."""
    repo = root / "hello-repo"
    for rel, content in files.items():
        path = repo / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    for args in (["init", "--quiet"], ["add", "."], ["commit", "--quiet", "-m", "initial"]):
        subprocess.run(
            ["git", "-c", "user.name=repobox", "-c", "user.email=repobox@example.com", *args],
            cwd=repo,
            check=True,
            capture_output=True,
        )
    return repo

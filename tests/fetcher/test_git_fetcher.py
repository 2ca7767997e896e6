"""Tests for GitFetcher.

Clone and archive tests run the real ``git`` binary against a repository
created under ``tmp_path`` and are skipped when git is not installed.
"""

from __future__ import annotations

import asyncio
import io
import shutil
import stat
import subprocess
import sys
import tarfile
from pathlib import Path

import pytest

from repobox.config import FetcherSettings
from repobox.errors import FetchError, RequestValidationError
from repobox.fetcher.git_fetcher import GitFetcher, find_build_spec, repo_name_from_url
from repobox.models import BuildSource

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(repo: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.name=repobox", "-c", "user.email=repobox@example.com", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


def _make_repo(root: Path, files: dict[str, str]) -> Path:
    repo = root / "upstream" / "demo"
    repo.mkdir(parents=True)
    for rel, content in files.items():
        path = repo / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    _git(repo, "init", "--quiet")
    _git(repo, "add", ".")
    _git(repo, "commit", "--quiet", "-m", "initial")
    return repo


def _fetcher(tmp_path: Path, **overrides) -> GitFetcher:
    settings = FetcherSettings(work_dir=tmp_path / "work", allow_file_urls=True, **overrides)
    return GitFetcher(settings)


async def _collect(fetcher: GitFetcher, source) -> bytes:
    return b"".join([chunk async for chunk in fetcher.archive(source)])


class TestValidateUrl:
    @pytest.mark.parametrize(
        ("url", "name"),
        [
            ("https://github.com/acme/demo", "demo"),
            ("https://github.com/acme/demo.git", "demo"),
            ("http://github.com/acme/demo/", "demo"),
            ("git@github.com:acme/demo.git", "demo"),
        ],
    )
    def test_accepts(self, url: str, name: str) -> None:
        assert GitFetcher().validate_url(url) == name

    @pytest.mark.parametrize(
        "url",
        [
            "",
            "ftp://github.com/acme/demo",
            "https://example.com/acme/demo",
            "https://github.com/acme",
            "git@example.com:acme/demo.git",
            "file:///srv/git/demo",
            "not a url",
        ],
    )
    def test_rejects(self, url: str) -> None:
        with pytest.raises(RequestValidationError):
            GitFetcher().validate_url(url)

    def test_extra_allowed_host(self) -> None:
        fetcher = GitFetcher(FetcherSettings(allowed_hosts=["github.com", "gitlab.example.org"]))
        assert fetcher.validate_url("https://gitlab.example.org/team/svc") == "svc"

    def test_file_urls_when_enabled(self, tmp_path: Path) -> None:
        assert _fetcher(tmp_path).validate_url("file:///srv/git/demo.git") == "demo"

    async def test_fetch_rejects_before_any_io(self, tmp_path: Path) -> None:
        fetcher = GitFetcher(FetcherSettings(work_dir=tmp_path / "work"))
        with pytest.raises(RequestValidationError):
            await fetcher.fetch("https://evil.example.com/acme/demo")
        assert not (tmp_path / "work").exists()


class TestRepoName:
    def test_strips_git_suffix(self) -> None:
        assert repo_name_from_url("https://github.com/acme/demo.git") == "demo"

    def test_scp_style(self) -> None:
        assert repo_name_from_url("git@github.com:demo.git") == "demo"


class TestFindBuildSpec:
    def test_first_match_in_lexical_dfs(self, tmp_path: Path) -> None:
        for rel in ["b/Dockerfile", "a/x/Dockerfile", "a/y/Dockerfile"]:
            (tmp_path / rel).parent.mkdir(parents=True, exist_ok=True)
            (tmp_path / rel).write_text("FROM busybox\n")

        assert find_build_spec(tmp_path, "Dockerfile") == tmp_path / "a" / "x" / "Dockerfile"

    def test_skips_git_directory(self, tmp_path: Path) -> None:
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "Dockerfile").write_text("")
        assert find_build_spec(tmp_path, "Dockerfile") is None

    def test_directory_with_spec_name_is_ignored(self, tmp_path: Path) -> None:
        (tmp_path / "Dockerfile").mkdir()
        (tmp_path / "Dockerfile" / "other").write_text("")
        assert find_build_spec(tmp_path, "Dockerfile") is None

    def test_missing_root(self, tmp_path: Path) -> None:
        assert find_build_spec(tmp_path / "nope", "Dockerfile") is None


@needs_git
class TestFetch:
    async def test_fetch_locates_nested_spec(self, tmp_path: Path) -> None:
        repo = _make_repo(
            tmp_path,
            {
                "README.md": "outside the context\n",
                "app/Dockerfile": 'FROM busybox\nCMD ["echo", "hello"]\n',
                "app/run.sh": "echo hello\n",
            },
        )
        fetcher = _fetcher(tmp_path)

        source = await fetcher.fetch(f"file://{repo}")

        assert source.local_clone_path.is_dir()
        assert source.local_clone_path.parent == tmp_path / "work"
        assert source.local_clone_path.name.startswith("demo-")
        assert source.context_subdir == "app"
        assert source.spec_relative_path == "Dockerfile"
        await fetcher.cleanup(source)

    async def test_concurrent_fetches_use_distinct_dirs(self, tmp_path: Path) -> None:
        repo = _make_repo(tmp_path, {"Dockerfile": "FROM busybox\n"})
        fetcher = _fetcher(tmp_path)

        first = await fetcher.fetch(f"file://{repo}")
        second = await fetcher.fetch(f"file://{repo}")

        assert first.local_clone_path != second.local_clone_path
        await fetcher.cleanup(first)
        await fetcher.cleanup(second)

    async def test_missing_spec_removes_clone(self, tmp_path: Path) -> None:
        repo = _make_repo(tmp_path, {"README.md": "no build here\n"})
        fetcher = _fetcher(tmp_path)

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(f"file://{repo}")

        assert exc_info.value.stage == "locate"
        assert "Dockerfile" in str(exc_info.value)
        assert list((tmp_path / "work").iterdir()) == []

    async def test_clone_failure(self, tmp_path: Path) -> None:
        fetcher = _fetcher(tmp_path)

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(f"file://{tmp_path / 'does-not-exist'}")

        assert exc_info.value.stage == "clone"
        assert list((tmp_path / "work").iterdir()) == []

    async def test_cleanup_is_idempotent(self, tmp_path: Path) -> None:
        repo = _make_repo(tmp_path, {"Dockerfile": "FROM busybox\n"})
        fetcher = _fetcher(tmp_path)
        source = await fetcher.fetch(f"file://{repo}")

        await fetcher.cleanup(source)
        await fetcher.cleanup(source)

        assert not source.local_clone_path.exists()


@needs_git
class TestArchive:
    async def test_context_rooted_at_spec_directory(self, tmp_path: Path) -> None:
        repo = _make_repo(
            tmp_path,
            {
                "README.md": "outside\n",
                "app/Dockerfile": "FROM busybox\n",
                "app/src/main.sh": "echo hello\n",
            },
        )
        fetcher = _fetcher(tmp_path)
        source = await fetcher.fetch(f"file://{repo}")
        (source.context_root / "untracked.txt").write_text("not committed\n")

        data = await _collect(fetcher, source)
        await fetcher.cleanup(source)

        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            names = {m.name.rstrip("/") for m in tar.getmembers() if m.isfile()}
        assert names == {"Dockerfile", "src/main.sh"}

    async def test_root_spec_archives_whole_tree(self, tmp_path: Path) -> None:
        repo = _make_repo(tmp_path, {"Dockerfile": "FROM busybox\n", "lib/a.txt": "a\n"})
        fetcher = _fetcher(tmp_path)
        source = await fetcher.fetch(f"file://{repo}")

        data = await _collect(fetcher, source)
        await fetcher.cleanup(source)

        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            names = {m.name for m in tar.getmembers() if m.isfile()}
        assert names == {"Dockerfile", "lib/a.txt"}

    async def test_side_file_copy(self, tmp_path: Path) -> None:
        repo = _make_repo(tmp_path, {"Dockerfile": "FROM busybox\n"})
        fetcher = _fetcher(tmp_path, archive_copy_dir=tmp_path / "contexts")
        source = await fetcher.fetch(f"file://{repo}")

        data = await _collect(fetcher, source)

        copy = tmp_path / "contexts" / f"{source.local_clone_path.name}.tar"
        assert copy.read_bytes() == data
        await fetcher.cleanup(source)

    async def test_archive_of_removed_clone_fails(self, tmp_path: Path) -> None:
        repo = _make_repo(tmp_path, {"Dockerfile": "FROM busybox\n"})
        fetcher = _fetcher(tmp_path)
        source = await fetcher.fetch(f"file://{repo}")
        shutil.rmtree(source.local_clone_path / ".git")

        with pytest.raises(FetchError) as exc_info:
            await _collect(fetcher, source)

        assert exc_info.value.stage == "archive"
        await fetcher.cleanup(source)


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
class TestArchiveScripted:
    def _fake_git(self, tmp_path: Path, body: str) -> str:
        script = tmp_path / "git"
        script.write_text("#!/bin/sh\n" + body)
        script.chmod(script.stat().st_mode | stat.S_IEXEC)
        return str(script)

    def _source(self, tmp_path: Path) -> BuildSource:
        clone = tmp_path / "clone"
        clone.mkdir()
        (clone / "Dockerfile").write_text("FROM busybox\n")
        return BuildSource(
            repo_url="https://github.com/acme/demo",
            local_clone_path=clone,
            spec_path=clone / "Dockerfile",
            context_root=clone,
        )

    async def test_large_stderr_does_not_stall(self, tmp_path: Path) -> None:
        git = self._fake_git(tmp_path, "head -c 262144 /dev/zero | tr '\\000' w >&2\nprintf tar-bytes\n")
        fetcher = GitFetcher(FetcherSettings(work_dir=tmp_path), git_binary=git)

        data = await asyncio.wait_for(_collect(fetcher, self._source(tmp_path)), 10.0)

        assert data == b"tar-bytes"

    async def test_failure_reports_stderr(self, tmp_path: Path) -> None:
        git = self._fake_git(tmp_path, "echo 'fatal: not a tree object' >&2\nexit 128\n")
        fetcher = GitFetcher(FetcherSettings(work_dir=tmp_path), git_binary=git)

        with pytest.raises(FetchError, match="not a tree object") as exc_info:
            await _collect(fetcher, self._source(tmp_path))

        assert exc_info.value.stage == "archive"

"""GitFetcher — clone a repository and stream its build context.

Uses the ``git`` CLI via subprocess, the same way
:class:`~repobox.engine.DockerEngine` drives ``docker``.

The build context is the ``git archive`` of ``HEAD`` rooted at the directory
that holds the build specification, so only tracked files reach the engine.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import uuid
from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from typing import IO
from urllib.parse import urlparse

from repobox.config import FetcherSettings
from repobox.errors import FetchError, RequestValidationError
from repobox.models import BuildSource

logger = logging.getLogger(__name__)

_SCP_URL = re.compile(r"^git@(?P<host>[A-Za-z0-9.-]+):(?P<path>[\w.~-]+(?:/[\w.~-]+)+)$")
_ARCHIVE_CHUNK = 64 * 1024


def repo_name_from_url(url: str) -> str:
    """Last path segment of *url* without a trailing ``.git``."""
    name = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    return name.removesuffix(".git")


class GitFetcher:
    """Fetches repositories into unique, process-scoped clone directories."""

    def __init__(self, settings: FetcherSettings | None = None, *, git_binary: str = "git") -> None:
        self._settings = settings or FetcherSettings()
        self._git = git_binary

    @property
    def settings(self) -> FetcherSettings:
        return self._settings

    def validate_url(self, url: str) -> str:
        """Return the repository name for *url* or raise.

        Raises:
            RequestValidationError: Unsupported scheme, unknown host, or no
                repository path.
        """
        if not url or not isinstance(url, str):
            raise RequestValidationError("Repository URL is required")

        scp = _SCP_URL.match(url)
        if scp is not None:
            host = scp.group("host")
        else:
            parsed = urlparse(url)
            if parsed.scheme == "file" and self._settings.allow_file_urls:
                if not parsed.path:
                    raise RequestValidationError(f"Invalid repository URL: {url}")
                return repo_name_from_url(parsed.path)
            if parsed.scheme not in ("https", "http") or not parsed.hostname:
                raise RequestValidationError(f"Invalid repository URL: {url}")
            if parsed.path.strip("/").count("/") < 1:
                raise RequestValidationError(f"URL does not name a repository: {url}")
            host = parsed.hostname

        if host.lower() not in {h.lower() for h in self._settings.allowed_hosts}:
            raise RequestValidationError(f"Repository host not allowed: {host}")

        name = repo_name_from_url(url)
        if not name:
            raise RequestValidationError(f"Could not extract repository name from URL: {url}")
        return name

    async def fetch(self, url: str) -> BuildSource:
        """Shallow-clone *url* and locate its build specification.

        On any failure after the clone directory is created, the directory is
        removed before the error propagates.
        """
        name = self.validate_url(url)
        work_dir = Path(self._settings.work_dir)
        clone_dir = work_dir / f"{name}-{os.getpid()}-{uuid.uuid4().hex[:8]}"

        try:
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FetchError(f"Failed to create work directory {work_dir}: {exc}", stage="clone") from exc

        try:
            await self._clone(url, clone_dir)
            spec_path = find_build_spec(clone_dir, self._settings.spec_filename)
            if spec_path is None:
                raise FetchError(
                    f"No {self._settings.spec_filename} found under {clone_dir}",
                    stage="locate",
                )
        except BaseException:
            await self._remove_tree(clone_dir)
            raise

        source = BuildSource(
            repo_url=url,
            local_clone_path=clone_dir,
            spec_path=spec_path,
            context_root=spec_path.parent,
        )
        logger.info(
            "Fetched %s into %s (spec=%s)",
            url,
            clone_dir,
            spec_path.relative_to(clone_dir).as_posix(),
        )
        return source

    async def _clone(self, url: str, clone_dir: Path) -> None:
        cmd = [self._git, "clone", "--depth", "1", "--quiet", url, str(clone_dir)]
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except OSError as exc:
            raise FetchError(f"Failed to run git: {exc}", stage="clone") from exc

        try:
            output, _ = await asyncio.wait_for(proc.communicate(), timeout=self._settings.clone_timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise FetchError(
                f"git clone timed out after {self._settings.clone_timeout}s",
                stage="clone",
            ) from None

        if proc.returncode != 0:
            detail = output.decode(errors="replace").strip() if output else ""
            raise FetchError(f"git clone failed (rc={proc.returncode}): {detail}", stage="clone")

    async def archive(self, source: BuildSource) -> AsyncIterator[bytes]:
        """Yield the tar build context for *source* chunk by chunk.

        Runs ``git archive`` on ``HEAD`` (or ``HEAD:<subdir>``) so the archive
        holds tracked files only, with paths relative to
        :attr:`BuildSource.context_root`.  When ``archive_copy_dir`` is set the
        bytes are also written to ``<archive_copy_dir>/<clone name>.tar``.

        Raises:
            FetchError: ``git archive`` could not run or exited non-zero.
        """
        subdir = source.context_subdir
        treeish = "HEAD" if subdir == "." else f"HEAD:{subdir}"
        cmd = [self._git, "archive", "--format=tar", treeish]

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(source.local_clone_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise FetchError(f"Failed to run git: {exc}", stage="archive") from exc

        assert proc.stdout is not None and proc.stderr is not None
        # Read stderr concurrently; a full stderr pipe blocks git.
        stderr_task = asyncio.create_task(proc.stderr.read())
        side_file = self._open_side_file(source)
        try:
            while True:
                chunk = await proc.stdout.read(_ARCHIVE_CHUNK)
                if not chunk:
                    break
                if side_file is not None:
                    side_file.write(chunk)
                yield chunk

            stderr = await stderr_task
            returncode = await proc.wait()
            if returncode != 0:
                detail = stderr.decode(errors="replace").strip()
                raise FetchError(f"git archive failed (rc={returncode}): {detail}", stage="archive")
        finally:
            if side_file is not None:
                side_file.close()
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()

    def _open_side_file(self, source: BuildSource) -> IO[bytes] | None:
        copy_dir = self._settings.archive_copy_dir
        if copy_dir is None:
            return None
        try:
            Path(copy_dir).mkdir(parents=True, exist_ok=True)
            return open(Path(copy_dir) / f"{source.local_clone_path.name}.tar", "wb")  # noqa: SIM115
        except OSError as exc:
            logger.warning("Cannot write build context copy to %s: %s", copy_dir, exc)
            return None

    async def cleanup(self, source: BuildSource) -> None:
        """Remove the clone directory of *source* (idempotent)."""
        await self._remove_tree(source.local_clone_path)

    @staticmethod
    async def _remove_tree(path: Path) -> None:
        await asyncio.to_thread(shutil.rmtree, path, True)
        logger.debug("Removed %s", path)


def find_build_spec(root: Path, filename: str) -> Path | None:
    """Depth-first, lexically ordered search for *filename* under *root*.

    The walk stops at the first match.  ``.git`` directories are skipped.
    """
    return next(_walk_matches(root, filename), None)


def _walk_matches(directory: Path, filename: str) -> Iterator[Path]:
    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError:
        return
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            if entry.name == ".git":
                continue
            yield from _walk_matches(Path(entry.path), filename)
        elif entry.name == filename and entry.is_file():
            yield Path(entry.path)

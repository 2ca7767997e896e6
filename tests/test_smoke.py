"""Smoke test to verify the project scaffolding works."""

from __future__ import annotations


def test_import() -> None:
    import repobox

    assert repobox.__version__ == "0.1.0"


def test_cli_entrypoint() -> None:
    from repobox.cli import main

    assert callable(main)


def test_package_imports() -> None:
    from repobox.engine import DockerEngine, OutputStream, ProcessOutputStream
    from repobox.fetcher import GitFetcher, find_build_spec
    from repobox.hosts import AwsCliCompute, ComputeAPI, HostProvisioner
    from repobox.queue import Job, JobKind, JobQueue

    assert DockerEngine is not None
    assert OutputStream is not None
    assert ProcessOutputStream is not None
    assert GitFetcher is not None
    assert find_build_spec is not None
    assert AwsCliCompute is not None
    assert ComputeAPI is not None
    assert HostProvisioner is not None
    assert Job is not None
    assert JobKind is not None
    assert JobQueue is not None


def test_lazy_import_from_repobox() -> None:
    import repobox

    assert repobox.SandboxService is not None
    assert repobox.load_config is not None

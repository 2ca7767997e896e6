"""Configuration models and the YAML loader.

The whole configuration is optional: ``load_config(None)`` returns defaults
that run sandboxes on the local engine.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from repobox.errors import ConfigError


class FetcherSettings(BaseModel):
    """Where and how repositories are cloned."""

    work_dir: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "repobox")
    spec_filename: str = "Dockerfile"
    allowed_hosts: list[str] = Field(default_factory=lambda: ["github.com"])
    allow_file_urls: bool = Field(default=False, description="Accept file:// URLs (local mirrors).")
    clone_timeout: float = 300.0
    archive_copy_dir: Path | None = Field(
        default=None,
        description="If set, every build context is also written here as <name>.tar.",
    )


class EngineSettings(BaseModel):
    """Container engine CLI settings."""

    docker_binary: str = "docker"
    local_endpoint: str = "unix:///var/run/docker.sock"
    build_timeout: float = 1800.0
    chunk_size: int = Field(default=1024, gt=0, description="Read size for output streams.")
    stop_timeout: int = 10


class RemoteHostSettings(BaseModel):
    """Ephemeral remote host settings (AWS EC2 through the ``aws`` CLI)."""

    enabled: bool = False
    aws_binary: str = "aws"
    region: str | None = None
    image_id: str | None = None
    image_name_filter: str = "amzn2-ami-hvm-*-x86_64-gp2"
    image_owner: str = "amazon"
    instance_type: str = "t3.micro"
    subnet_id: str | None = None
    key_name: str = "docker-sandbox-key"
    key_path: Path = Path("docker-sandbox-key.pem")
    security_group: str = "DockerSandbox"
    engine_port: int = 2375
    running_timeout: float = 600.0
    health_timeout: float = 600.0
    poll_interval: float = 15.0
    probe_attempts: int = Field(default=30, ge=1)
    probe_interval: float = 10.0
    provision_timeout: float = 1800.0


class QueueSettings(BaseModel):
    """Job queue sizing."""

    workers: int = Field(default=4, ge=1)
    capacity: int = Field(default=100, ge=1)
    enqueue_timeout: float = 5.0
    stop_timeout: float = 30.0


class TelemetrySettings(BaseModel):
    """Optional telemetry configuration."""

    enabled: bool = False
    otlp_endpoint: str | None = None


class RepoboxConfig(BaseModel):
    """Top-level configuration parsed from YAML."""

    fetcher: FetcherSettings = Field(default_factory=FetcherSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    remote: RemoteHostSettings = Field(default_factory=RemoteHostSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


class ConfigLoader:
    """Load and validate a YAML config file into a :class:`RepoboxConfig`."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def load(self) -> RepoboxConfig:
        """Read YAML, interpolate env vars, and validate.

        Environment variables in the form ``${VAR}`` or ``$VAR`` are expanded
        using :func:`os.path.expandvars` before YAML parsing.

        Raises:
            ConfigError: On read errors, YAML parse errors or schema failures.
        """
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Cannot read {self._path}: {exc}") from exc

        expanded = os.path.expandvars(raw)

        try:
            data: Any = yaml.safe_load(expanded)
        except yaml.YAMLError as exc:
            raise ConfigError(f"YAML parse error: {exc}") from exc

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Config YAML must be a mapping")

        try:
            return RepoboxConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc


def load_config(path: Path | str | None = None) -> RepoboxConfig:
    """Load *path* if given, otherwise return the default configuration."""
    if path is None:
        return RepoboxConfig()
    return ConfigLoader(Path(path)).load()

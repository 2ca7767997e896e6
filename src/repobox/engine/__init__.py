"""Container engine access — the ``docker`` CLI and its output streams."""

from repobox.engine.docker_engine import DockerEngine
from repobox.engine.streams import OutputStream, ProcessOutputStream

__all__ = [
    "DockerEngine",
    "OutputStream",
    "ProcessOutputStream",
]

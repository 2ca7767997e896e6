"""repobox — build Git repositories into running sandbox containers."""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.1.0"

if TYPE_CHECKING:
    from repobox.config import load_config as load_config
    from repobox.service import SandboxService as SandboxService

_EXPORTS = {
    "SandboxService": "repobox.service",
    "load_config": "repobox.config",
}


def __getattr__(name: str) -> object:
    module_path = _EXPORTS.get(name)
    if module_path is not None:
        import importlib

        mod = importlib.import_module(module_path)
        return getattr(mod, name)
    raise AttributeError(f"module 'repobox' has no attribute {name!r}")

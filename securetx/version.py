"""
Version information for the SecureTx SDK.
"""
import importlib.metadata
import pathlib

import tomli

DISTRIBUTION = "securetx-sdk"
FALLBACK_VERSION = "0.1.0"

_PYPROJECT = pathlib.Path(__file__).resolve().parent.parent / "pyproject.toml"


def _source_tree_version() -> str:
    """Version declared in pyproject.toml when running from a checkout."""
    try:
        with _PYPROJECT.open("rb") as f:
            return tomli.load(f)["project"]["version"]
    except (OSError, KeyError, tomli.TOMLDecodeError):
        return FALLBACK_VERSION


def get_version() -> str:
    """Installed distribution version, else the source tree's."""
    try:
        return importlib.metadata.version(DISTRIBUTION)
    except importlib.metadata.PackageNotFoundError:
        return _source_tree_version()


__version__ = get_version()

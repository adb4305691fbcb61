"""Blockwarden: protection storage for multiplayer block worlds.

Blockwarden binds world coordinates (chests, doors, furnaces) to an owner and
an access policy, and keeps those bindings in SQLite behind a two-way
in-memory cache so every block interaction can be checked without a query.

Version Management
------------------
``__version__`` is read from the installed package metadata at import time.
The single source of truth is the ``version`` field in ``pyproject.toml``.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

# ---------------------------------------------------------------------------
# Package version, read from pyproject.toml via importlib.metadata.
#
# When the package is imported without being installed (for example straight
# from a source checkout), fall back to the last released version string.
# ---------------------------------------------------------------------------
try:
    __version__: str = version("blockwarden")
except PackageNotFoundError:
    __version__ = "0.3.0"

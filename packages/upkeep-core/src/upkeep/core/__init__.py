"""Upkeep core package.

Keeps a local installation in sync with a published manifest: which files
must exist, their CRC32 checksums and sizes, where they are fetched from and
where they are placed.

Public entrypoints:
- upkeep.core.api: stable API surface for integrations
- upkeep.core.cli.main: the `upkeep` command

Internal modules may change without notice.
"""

from __future__ import annotations

from upkeep.core.sync import update

__all__ = ["update"]

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from upkeep.core.entries import FileEntry, crc32_file
from upkeep.core.manifest import Manifest
from upkeep.core.platforms import OS, effective_os

log = logging.getLogger("upkeep.core.resolver")


class Staleness(str, Enum):
    CURRENT = "current"
    MISSING = "missing"
    STALE = "stale"


@dataclass(frozen=True)
class Classified:
    entry: FileEntry
    target: Path
    state: Staleness
    source_uri: str


@dataclass(frozen=True)
class Resolution:
    platform: OS
    entries: Tuple[Classified, ...]

    def _with(self, state: Staleness) -> List[Classified]:
        return [c for c in self.entries if c.state == state]

    @property
    def missing(self) -> List[Classified]:
        return self._with(Staleness.MISSING)

    @property
    def stale(self) -> List[Classified]:
        return self._with(Staleness.STALE)

    @property
    def current(self) -> List[Classified]:
        return self._with(Staleness.CURRENT)

    @property
    def pending(self) -> List[Classified]:
        return [c for c in self.entries if c.state != Staleness.CURRENT]

    @property
    def requires_update(self) -> bool:
        return any(c.state != Staleness.CURRENT for c in self.entries)


def classify_entry(entry: FileEntry, target: Path) -> Staleness:
    try:
        st = target.stat()
    except FileNotFoundError:
        return Staleness.MISSING
    if not target.is_file():
        return Staleness.STALE
    if int(st.st_size) != int(entry.size):
        return Staleness.STALE
    checksum, _size = crc32_file(target)
    return Staleness.CURRENT if checksum == entry.checksum else Staleness.STALE


def classify(manifest: Manifest, *, platform: Optional[OS] = None) -> Resolution:
    """Classify every entry applicable to `platform` against the local disk.

    Read-only. All targets are resolved before any file is inspected, so a
    path escaping the base path fails the whole resolution.
    """
    plat = effective_os(platform)
    entries = manifest.files_for(plat)
    resolved = [(e, manifest.target_path(e, plat), manifest.source_uri(e, plat)) for e in entries]

    out: List[Classified] = []
    for entry, target, uri in resolved:
        state = classify_entry(entry, target)
        out.append(Classified(entry=entry, target=target, state=state, source_uri=uri))

    res = Resolution(platform=plat, entries=tuple(out))
    log.debug(
        "classified platform=%s total=%d missing=%d stale=%d",
        plat.value,
        len(out),
        len(res.missing),
        len(res.stale),
    )
    return res


def requires_update(manifest: Manifest, *, platform: Optional[OS] = None) -> bool:
    return classify(manifest, platform=platform).requires_update

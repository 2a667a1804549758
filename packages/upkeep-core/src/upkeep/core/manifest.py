from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from upkeep.core.entries import FileEntry, resolve_source_uri, resolve_target_path, verify_against_disk
from upkeep.core.exception import ConfigurationError
from upkeep.core.platforms import OS, effective_os, os_matches

log = logging.getLogger("upkeep.core.manifest")

_PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")


@dataclass(frozen=True)
class Property:
    key: str
    value: str
    os: Optional[OS] = None

    def __post_init__(self) -> None:
        if not isinstance(self.key, str) or not self.key.strip():
            raise ConfigurationError("property key is required and must be a non-empty string")
        if self.value is None:
            raise ConfigurationError(f"property {self.key!r} has no value")


def _effective(items: Iterable[Any], key_of, platform: OS) -> List[Any]:
    """Pick one item per key for `platform`: OS-specific beats universal.

    The result keeps the position of the first applicable item for each key.
    """
    chosen: Dict[str, Any] = {}
    order: List[str] = []
    for item in items:
        if not os_matches(item.os, platform):
            continue
        k = key_of(item)
        if k not in chosen:
            order.append(k)
            chosen[k] = item
        elif chosen[k].os is None and item.os is not None:
            chosen[k] = item
    return [chosen[k] for k in order]


@dataclass(frozen=True)
class Manifest:
    """Declarative description of an installation.

    Instances are immutable; "updating" a manifest means building a new one.
    Equality covers base URI/path, properties and files only.
    """

    base_uri: str
    base_path: str
    properties: Tuple[Property, ...] = ()
    files: Tuple[FileEntry, ...] = ()
    timestamp: Optional[datetime] = field(default=None, compare=False)
    signature: Optional[bytes] = field(default=None, compare=False, repr=False)

    @staticmethod
    def builder() -> "ManifestBuilder":
        return ManifestBuilder()

    # ---- properties -------------------------------------------------------

    def get_properties(self, key: str | None = None, *, platform: OS | None = None) -> List[Property]:
        eff = _effective(self.properties, lambda p: p.key, effective_os(platform))
        if key is None:
            return eff
        return [p for p in eff if p.key == key]

    def resolve_property(self, key: str, *, platform: OS | None = None) -> Optional[str]:
        found = self.get_properties(key, platform=platform)
        if not found:
            return None
        return self._expand(found[0].value, effective_os(platform), seen=(key,))

    def properties_map(self, *, platform: OS | None = None) -> Dict[str, str]:
        plat = effective_os(platform)
        return {p.key: self._expand(p.value, plat, seen=(p.key,)) for p in self.get_properties(platform=plat)}

    def resolve_placeholders(self, text: str, *, platform: OS | None = None) -> str:
        return self._expand(text, effective_os(platform), seen=())

    def _expand(self, text: str, platform: OS, *, seen: Tuple[str, ...]) -> str:
        if not text or "${" not in text:
            return text

        def _sub(m: "re.Match[str]") -> str:
            name = m.group(1).strip()
            if name in seen:
                raise ConfigurationError(f"placeholder cycle: {' -> '.join(seen + (name,))}")
            props = self.get_properties(name, platform=platform)
            if props:
                return self._expand(props[0].value, platform, seen=seen + (name,))
            return _builtin_placeholder(name, platform)

        return _PLACEHOLDER_RE.sub(_sub, text)

    # ---- paths ------------------------------------------------------------

    def resolved_base_uri(self, platform: OS | None = None) -> str:
        return self.resolve_placeholders(self.base_uri, platform=platform)

    def resolved_base_path(self, platform: OS | None = None) -> Path:
        return Path(self.resolve_placeholders(self.base_path, platform=platform))

    def files_for(self, platform: OS | None = None) -> List[FileEntry]:
        plat = effective_os(platform)
        return [f for f in self.files if os_matches(f.os, plat)]

    def target_path(self, entry: FileEntry, platform: OS | None = None) -> Path:
        if entry.target:
            entry = entry.with_target(self.resolve_placeholders(entry.target, platform=platform))
        return resolve_target_path(entry, self.resolved_base_path(platform))

    def source_uri(self, entry: FileEntry, platform: OS | None = None) -> str:
        if entry.uri:
            entry = entry.with_uri(self.resolve_placeholders(entry.uri, platform=platform))
        return resolve_source_uri(entry, self.resolved_base_uri(platform))

    def verify(self, entry: FileEntry, platform: OS | None = None) -> bool:
        return verify_against_disk(entry, self.target_path(entry, platform))

    # ---- copies -----------------------------------------------------------

    def with_timestamp(self, timestamp: Optional[datetime]) -> "Manifest":
        return replace(self, timestamp=timestamp)

    def with_signature(self, signature: Optional[bytes]) -> "Manifest":
        return replace(self, signature=signature)


def _builtin_placeholder(name: str, platform: OS) -> str:
    if name == "user.home":
        return str(Path.home())
    if name == "user.dir":
        return os.getcwd()
    if name == "os.name":
        return platform.value
    if name.startswith("env."):
        val = os.environ.get(name[4:])
        if val is not None:
            return val
    raise ConfigurationError(f"unresolved placeholder: ${{{name}}}")


def _check_unique(items: Iterable[Any], key_of, what: str) -> None:
    seen: set[tuple] = set()
    for item in items:
        k = (key_of(item), item.os)
        if k in seen:
            where = item.os.value if item.os else "all platforms"
            raise ConfigurationError(f"duplicate {what} {key_of(item)!r} for {where}")
        seen.add(k)


def _check_file_paths(files: Iterable[FileEntry]) -> None:
    """One logical path may repeat only across disjoint OS filters."""
    seen: Dict[str, List[Optional[OS]]] = {}
    for f in files:
        filters = seen.setdefault(f.path, [])
        for other in filters:
            if other is None or f.os is None or other == f.os:
                a = other.value if other else "all platforms"
                b = f.os.value if f.os else "all platforms"
                raise ConfigurationError(f"file {f.path!r} is listed twice with overlapping OS filters ({a}, {b})")
        filters.append(f.os)


class ManifestBuilder:
    """Accumulates manifest parts; `build()` validates and optionally signs."""

    def __init__(self) -> None:
        self._base_uri: Optional[str] = None
        self._base_path: Optional[str] = None
        self._properties: List[Property] = []
        self._files: List[FileEntry] = []
        self._signer = None
        self._timestamp: Optional[datetime] = None

    def base_uri(self, uri: str) -> "ManifestBuilder":
        self._base_uri = str(uri) if uri is not None else None
        return self

    def base_path(self, path: str | Path) -> "ManifestBuilder":
        self._base_path = str(path) if path is not None else None
        return self

    def property(self, key: str, value: str, platform: OS | str | None = None) -> "ManifestBuilder":
        self._properties.append(Property(key=key, value=value, os=OS.parse(platform)))
        return self

    def properties(self, props: Iterable[Property]) -> "ManifestBuilder":
        self._properties.extend(props)
        return self

    def file(self, entry: FileEntry) -> "ManifestBuilder":
        self._files.append(entry)
        return self

    def files(self, entries: Iterable[FileEntry]) -> "ManifestBuilder":
        self._files.extend(entries)
        return self

    def signer(self, private_key) -> "ManifestBuilder":
        self._signer = private_key
        return self

    def timestamp(self, ts: Optional[datetime]) -> "ManifestBuilder":
        self._timestamp = ts
        return self

    def build(self) -> Manifest:
        if not self._base_uri or not self._base_uri.strip():
            raise ConfigurationError("base URI is required")
        if "${" not in self._base_uri:
            parts = urlsplit(self._base_uri)
            if len(parts.scheme) < 2:
                raise ConfigurationError(f"base URI must be absolute (with a scheme): {self._base_uri!r}")
        if not self._base_path or not self._base_path.strip():
            raise ConfigurationError("base path is required")

        _check_unique(self._properties, lambda p: p.key, "property")
        _check_file_paths(self._files)

        manifest = Manifest(
            base_uri=self._base_uri,
            base_path=self._base_path,
            properties=tuple(self._properties),
            files=tuple(self._files),
            timestamp=self._timestamp or datetime.now(timezone.utc).replace(microsecond=0),
        )

        if self._signer is not None:
            from upkeep.core.codec import canonical_bytes
            from upkeep.core.signing import sign

            manifest = manifest.with_signature(sign(canonical_bytes(manifest), self._signer))
            log.debug("signed manifest base_uri=%s files=%d", manifest.base_uri, len(manifest.files))
        return manifest

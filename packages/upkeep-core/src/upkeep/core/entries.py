from __future__ import annotations

import logging
import os
import zlib
from dataclasses import dataclass, replace
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional, Tuple, Union
from urllib.parse import quote, urljoin, urlsplit

from upkeep.core.exception import ConfigurationError, NotFoundError, PathSecurityError
from upkeep.core.platforms import OS

log = logging.getLogger("upkeep.core.entries")

CHUNK_SIZE = 64 * 1024

PathLike = Union[str, Path]


@dataclass(frozen=True)
class FileEntry:
    """One file the installation must contain.

    `path` is the logical path: relative, POSIX separators, used both as the
    suffix of the remote URI and as the path under the local base path.
    `uri` and `target` optionally override where the file is fetched from and
    where it is placed.
    """

    path: str
    checksum: int
    size: int
    os: Optional[OS] = None
    classpath: bool = False
    modulepath: bool = False
    comment: str = ""
    ignore_boot_conflict: bool = False
    uri: Optional[str] = None
    target: Optional[str] = None

    def __post_init__(self) -> None:
        validate_logical_path(self.path)
        if int(self.size) < 0:
            raise ConfigurationError(f"negative size for {self.path}: {self.size}")
        if not 0 <= int(self.checksum) <= 0xFFFFFFFF:
            raise ConfigurationError(f"checksum out of CRC32 range for {self.path}: {self.checksum}")

    def with_path(self, path: str) -> "FileEntry":
        return replace(self, path=path)

    def with_os(self, os: Optional[OS]) -> "FileEntry":
        return replace(self, os=OS.parse(os) if isinstance(os, str) else os)

    def with_classpath(self, flag: bool = True) -> "FileEntry":
        return replace(self, classpath=bool(flag))

    def with_modulepath(self, flag: bool = True) -> "FileEntry":
        return replace(self, modulepath=bool(flag))

    def with_comment(self, comment: str) -> "FileEntry":
        return replace(self, comment=comment or "")

    def with_ignore_boot_conflict(self, flag: bool = True) -> "FileEntry":
        return replace(self, ignore_boot_conflict=bool(flag))

    def with_uri(self, uri: Optional[str]) -> "FileEntry":
        return replace(self, uri=uri or None)

    def with_target(self, target: Optional[str]) -> "FileEntry":
        return replace(self, target=target or None)

    @property
    def checksum_hex(self) -> str:
        return f"{int(self.checksum):08x}"


def validate_logical_path(path: str) -> None:
    if not isinstance(path, str) or not path.strip():
        raise ConfigurationError("file entry path is required and must be a non-empty string")
    if "\\" in path:
        raise ConfigurationError(f"file entry path must use '/' separators: {path!r}")
    if path.startswith("/") or PurePosixPath(path).is_absolute():
        raise ConfigurationError(f"file entry path must be relative: {path!r}")


def crc32_bytes(data: bytes) -> int:
    return zlib.crc32(data) & 0xFFFFFFFF


def crc32_chunks(chunks: Iterable[bytes]) -> Tuple[int, int]:
    crc = 0
    size = 0
    for chunk in chunks:
        crc = zlib.crc32(chunk, crc)
        size += len(chunk)
    return crc & 0xFFFFFFFF, size


def _iter_file(path: Path, chunk_size: int = CHUNK_SIZE):
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            yield chunk


def crc32_file(path: PathLike) -> Tuple[int, int]:
    """Return (checksum, size) over the exact on-disk bytes of `path`."""
    return crc32_chunks(_iter_file(Path(path)))


def capture_local(path: PathLike, *, base_path: PathLike | None = None, logical_path: str | None = None) -> FileEntry:
    """Build a FileEntry from an existing local file.

    The logical path is `logical_path` when given, else the path relative to
    `base_path` when the file lives under it, else the file name.
    """
    p = Path(path)
    if not p.is_file():
        raise NotFoundError(f"cannot capture missing file: {p}")

    checksum, size = crc32_file(p)
    log.debug("captured %s size=%s checksum=%08x", p, size, checksum)

    if logical_path is None:
        logical_path = p.name
        if base_path is not None:
            try:
                logical_path = p.resolve().relative_to(Path(base_path).resolve()).as_posix()
            except ValueError:
                pass
    return FileEntry(path=logical_path, checksum=checksum, size=size)


def _is_absolute_uri(uri: str) -> bool:
    parts = urlsplit(uri)
    # "C:/x" parses with scheme "c"; treat one-letter schemes as drive letters.
    return bool(parts.scheme) and len(parts.scheme) > 1


def resolve_source_uri(entry: FileEntry, base_uri: str) -> str:
    if entry.uri:
        if _is_absolute_uri(entry.uri):
            return entry.uri
        return urljoin(_with_trailing_slash(base_uri), entry.uri)
    return _with_trailing_slash(base_uri) + quote(entry.path, safe="/")


def _with_trailing_slash(uri: str) -> str:
    return uri if uri.endswith("/") else uri + "/"


def resolve_target_path(entry: FileEntry, base_path: PathLike) -> Path:
    """Resolve where `entry` lives on disk; never outside `base_path`.

    Normalization is lexical (symlinks are not followed) and the result is
    rejected rather than clamped when it escapes the base.
    """
    base = os.path.normpath(os.path.abspath(str(base_path)))
    rel = entry.target or entry.path
    if os.path.isabs(rel):
        candidate = os.path.normpath(rel)
    else:
        candidate = os.path.normpath(os.path.join(base, *rel.split("/")))

    try:
        inside = candidate != base and os.path.commonpath([base, candidate]) == base
    except ValueError:
        # different drives on Windows
        inside = False
    if not inside:
        raise PathSecurityError(rel, base)
    return Path(candidate)


def verify_against_disk(entry: FileEntry, target: PathLike) -> bool:
    """True when the file at `target` has the entry's size and checksum."""
    p = Path(target)
    try:
        st = p.stat()
    except FileNotFoundError:
        return False
    if not p.is_file():
        return False
    if int(st.st_size) != int(entry.size):
        return False
    checksum, size = crc32_file(p)
    return checksum == entry.checksum and size == entry.size

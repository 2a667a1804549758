from __future__ import annotations

import io
import logging
import os
import tempfile
import zipfile
import zlib
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import pyzipper

from upkeep.core import codec
from upkeep.core.entries import FileEntry, crc32_bytes, crc32_file, resolve_target_path
from upkeep.core.exception import (
    ConfigurationError,
    DownloadIntegrityError,
    FormatError,
    NotFoundError,
)
from upkeep.core.manifest import Manifest
from upkeep.core.platforms import OS

log = logging.getLogger("upkeep.core.bundle")

CONFIG_ENTRY = "reserved/config"
FILES_PREFIX = "files/"

BundleData = Union[bytes, str, Path]
FileData = Union[bytes, str, Path]


def _member(path: str) -> str:
    return FILES_PREFIX + path


def _select(manifest: Manifest, platform: Optional[OS]) -> List[FileEntry]:
    entries = manifest.files_for(platform) if platform is not None else list(manifest.files)
    seen: Dict[str, FileEntry] = {}
    for e in entries:
        if e.path in seen:
            raise ConfigurationError(
                f"bundle cannot hold two entries for path {e.path!r}; pass platform= to pick one variant"
            )
        seen[e.path] = e
    return entries


def _check(entry: FileEntry, checksum: int, size: int) -> None:
    if checksum != entry.checksum or size != entry.size:
        raise DownloadIntegrityError(
            path=entry.path,
            expected_checksum=entry.checksum,
            actual_checksum=checksum,
            expected_size=entry.size,
            actual_size=size,
        )


def _write_bundle(
    out: BinaryIO,
    manifest: Manifest,
    files: Optional[Mapping[str, FileData]],
    *,
    platform: Optional[OS],
    password: Optional[str],
) -> int:
    entries = _select(manifest, platform)

    if password:
        zf = pyzipper.AESZipFile(out, "w", compression=pyzipper.ZIP_DEFLATED, encryption=pyzipper.WZ_AES)
        zf.setpassword(str(password).encode("utf-8"))
        zf.setencryption(pyzipper.WZ_AES, nbits=256)
    else:
        zf = zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED)

    count = 0
    with zf:
        zf.writestr(CONFIG_ENTRY, codec.write(manifest))
        for entry in entries:
            if files is not None:
                data = files.get(entry.path)
            else:
                target = manifest.target_path(entry, platform)
                data = target if target.is_file() else None
            if data is None:
                log.debug("bundle: no bytes for %s, left out", entry.path)
                continue

            if isinstance(data, bytes):
                _check(entry, crc32_bytes(data), len(data))
                zf.writestr(_member(entry.path), data)
            else:
                _check(entry, *crc32_file(data))
                zf.write(str(data), arcname=_member(entry.path))
            count += 1
    return count


def pack(
    manifest: Manifest,
    files: Optional[Mapping[str, FileData]] = None,
    *,
    platform: Optional[OS] = None,
    password: Optional[str] = None,
) -> bytes:
    """Build a bundle in memory.

    `files` maps logical paths to bytes or local paths. When omitted the bytes
    come from each entry's resolved target. Every packed file is checked
    against its entry first.
    """
    buf = io.BytesIO()
    _write_bundle(buf, manifest, files, platform=platform, password=password)
    return buf.getvalue()


def pack_file(
    manifest: Manifest,
    path: Union[str, Path],
    files: Optional[Mapping[str, FileData]] = None,
    *,
    platform: Optional[OS] = None,
    password: Optional[str] = None,
) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{out.name}.", suffix=".tmp", dir=str(out.parent))
    try:
        with os.fdopen(fd, "w+b") as f:
            count = _write_bundle(f, manifest, files, platform=platform, password=password)
        os.replace(tmp, out)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    log.info("bundle written path=%s files=%d encrypted=%s", out, count, bool(password))
    return out


class BundleExtractor:
    """Reads files out of a bundle and installs them."""

    def __init__(self, manifest: Manifest, source: BundleData, *, members: List[str], password: Optional[str] = None):
        self.manifest = manifest
        self._source = source
        self._password = password
        self._members = list(members)

    @contextmanager
    def _open(self) -> Iterator[zipfile.ZipFile]:
        with _open_zip(self._source, self._password) as zf:
            yield zf

    def paths(self) -> List[str]:
        """Logical paths of the files carried by the bundle."""
        return list(self._members)

    def read(self, path: str) -> bytes:
        if path not in self._members:
            raise NotFoundError(f"{path} is not in the bundle")
        with self._open() as zf:
            return zf.read(_member(path))

    def _targets(
        self,
        target_dir: Optional[Union[str, Path]],
        paths: Optional[List[str]],
        platform: Optional[OS],
    ) -> List[Tuple[FileEntry, Path]]:
        by_path = {e.path: e for e in self.manifest.files_for(platform)}
        if paths is None:
            wanted = [p for p in self._members if p in by_path]
        else:
            wanted = list(paths)
            for p in wanted:
                if p not in self._members or p not in by_path:
                    raise NotFoundError(f"{p} is not in the bundle")

        out: List[Tuple[FileEntry, Path]] = []
        for p in wanted:
            entry = by_path[p]
            if target_dir is None:
                target = self.manifest.target_path(entry, platform)
            else:
                target = resolve_target_path(replace(entry, target=None), target_dir)
            out.append((entry, target))
        return out

    def extract(
        self,
        target_dir: Optional[Union[str, Path]] = None,
        *,
        paths: Optional[List[str]] = None,
        platform: Optional[OS] = None,
    ) -> List[Path]:
        """Install bundled files.

        Without `target_dir`, files go to their manifest targets. Every target
        is resolved (and checked against its base) before anything is written.
        """
        # resolve everything up front so a bad path writes nothing
        plan = self._targets(target_dir, paths, platform)
        written: List[Path] = []
        with self._open() as zf:
            for entry, target in plan:
                target.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".part", dir=str(target.parent))
                try:
                    crc = 0
                    size = 0
                    with os.fdopen(fd, "wb") as out, zf.open(_member(entry.path)) as src:
                        for chunk in iter(lambda: src.read(64 * 1024), b""):
                            out.write(chunk)
                            crc = zlib.crc32(chunk, crc)
                            size += len(chunk)
                            if size > entry.size:
                                break
                    _check(entry, crc & 0xFFFFFFFF, size)
                    os.replace(tmp, target)
                except BaseException:
                    Path(tmp).unlink(missing_ok=True)
                    raise
                written.append(target)
                log.debug("extracted %s -> %s", entry.path, target)
        log.info("bundle extracted files=%d", len(written))
        return written


@contextmanager
def _open_zip(source: BundleData, password: Optional[str]) -> Iterator[zipfile.ZipFile]:
    fileobj = io.BytesIO(source) if isinstance(source, bytes) else str(source)
    try:
        if password:
            zf = pyzipper.AESZipFile(fileobj, "r")
            zf.setpassword(str(password).encode("utf-8"))
        else:
            zf = zipfile.ZipFile(fileobj, "r")
    except zipfile.BadZipFile as e:
        raise FormatError(f"not a bundle: {e}") from e
    except FileNotFoundError as e:
        raise NotFoundError(f"bundle not found: {source}") from e
    with zf:
        yield zf


def unpack(
    data_or_path: BundleData,
    *,
    public_key=None,
    password: Optional[str] = None,
) -> Tuple[Manifest, BundleExtractor]:
    """Open a bundle: parse (and optionally verify) its manifest, index its files."""
    with _open_zip(data_or_path, password) as zf:
        names = zf.namelist()
        if CONFIG_ENTRY not in names:
            raise FormatError(f"bundle has no {CONFIG_ENTRY} entry")
        try:
            raw = zf.read(CONFIG_ENTRY)
        except (RuntimeError, NotImplementedError) as e:
            # missing or wrong password, or AES entries read without one
            raise FormatError(f"cannot read bundle manifest: {e}") from e
        manifest = codec.read(raw, public_key)

        known = {e.path for e in manifest.files}
        members: List[str] = []
        for name in names:
            if name == CONFIG_ENTRY or name.endswith("/"):
                continue
            if not name.startswith(FILES_PREFIX):
                raise FormatError(f"unexpected bundle member: {name}")
            path = name[len(FILES_PREFIX):]
            if path not in known:
                raise FormatError(f"bundle member {name} has no manifest entry")
            members.append(path)

    log.debug("bundle opened files=%d", len(members))
    return manifest, BundleExtractor(manifest, data_or_path, members=members, password=password)

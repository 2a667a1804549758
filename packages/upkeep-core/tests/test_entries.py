from __future__ import annotations

import zlib
from pathlib import Path

import pytest

from upkeep.core.entries import (
    FileEntry,
    capture_local,
    crc32_bytes,
    crc32_chunks,
    crc32_file,
    resolve_source_uri,
    resolve_target_path,
    verify_against_disk,
)
from upkeep.core.exception import ConfigurationError, NotFoundError, PathSecurityError
from upkeep.core.platforms import OS


def test_crc32_matches_zlib():
    assert crc32_bytes(b"hello") == 0x3610A686
    assert crc32_bytes(b"") == 0
    data = b"x" * 200_000
    assert crc32_chunks([data[:7], data[7:100_000], data[100_000:]]) == (zlib.crc32(data) & 0xFFFFFFFF, len(data))


def test_capture_local_relative_to_base(tmp_path: Path):
    p = tmp_path / "base" / "lib" / "a.bin"
    p.parent.mkdir(parents=True)
    p.write_bytes(b"\x00\x01\x02" * 1000)

    e = capture_local(p, base_path=tmp_path / "base")
    assert e.path == "lib/a.bin"
    assert e.size == 3000
    assert (e.checksum, e.size) == crc32_file(p)
    assert e.os is None

    e2 = capture_local(p, logical_path="custom/name.bin")
    assert e2.path == "custom/name.bin"


def test_capture_local_missing_file(tmp_path: Path):
    with pytest.raises(NotFoundError):
        capture_local(tmp_path / "nope.bin")


@pytest.mark.parametrize("bad", ["", "   ", "/etc/passwd", "lib\\a.dll"])
def test_logical_path_validation(bad):
    with pytest.raises(ConfigurationError):
        FileEntry(path=bad, checksum=0, size=0)


def test_checksum_and_size_ranges():
    with pytest.raises(ConfigurationError):
        FileEntry(path="a", checksum=0x1_0000_0000, size=0)
    with pytest.raises(ConfigurationError):
        FileEntry(path="a", checksum=0, size=-1)


def test_builder_style_copies_leave_original_untouched():
    e = FileEntry(path="a.txt", checksum=1, size=1)
    e2 = e.with_os(OS.WINDOWS).with_classpath().with_comment("win only")
    assert e.os is None and e.classpath is False
    assert e2.os is OS.WINDOWS and e2.classpath is True and e2.comment == "win only"
    assert e.with_os("linux").os is OS.LINUX
    assert e2.checksum_hex == "00000001"


def test_source_uri_joins_and_quotes():
    e = FileEntry(path="docs/read me.txt", checksum=0, size=0)
    assert resolve_source_uri(e, "https://example.com/app") == "https://example.com/app/docs/read%20me.txt"
    assert resolve_source_uri(e, "https://example.com/app/") == "https://example.com/app/docs/read%20me.txt"

    absolute = e.with_uri("https://mirror.example.org/x.txt")
    assert resolve_source_uri(absolute, "https://example.com/app") == "https://mirror.example.org/x.txt"

    relative = e.with_uri("other/x.txt")
    assert resolve_source_uri(relative, "https://example.com/app") == "https://example.com/app/other/x.txt"


def test_target_path_stays_under_base(tmp_path: Path):
    base = tmp_path / "install"
    e = FileEntry(path="lib/a.py", checksum=0, size=0)
    assert resolve_target_path(e, base) == base / "lib" / "a.py"

    # ".." that stays inside the base is fine
    inner = FileEntry(path="lib/../bin/run", checksum=0, size=0)
    assert resolve_target_path(inner, base) == base / "bin" / "run"


@pytest.mark.parametrize("path", ["../../etc/passwd", "lib/../../outside.txt", ".."])
def test_target_path_traversal_is_rejected(tmp_path: Path, path: str):
    e = FileEntry(path=path, checksum=0, size=0)
    with pytest.raises(PathSecurityError):
        resolve_target_path(e, tmp_path / "install")


def test_target_override_outside_base_is_rejected(tmp_path: Path):
    e = FileEntry(path="a.txt", checksum=0, size=0, target=str(tmp_path / "elsewhere" / "a.txt"))
    with pytest.raises(PathSecurityError):
        resolve_target_path(e, tmp_path / "install")


def test_verify_against_disk(tmp_path: Path):
    p = tmp_path / "f.txt"
    data = b"abc"
    e = FileEntry(path="f.txt", checksum=crc32_bytes(data), size=len(data))
    assert verify_against_disk(e, p) is False
    p.write_bytes(data)
    assert verify_against_disk(e, p) is True
    p.write_bytes(b"abd")
    assert verify_against_disk(e, p) is False

from __future__ import annotations

from pathlib import Path

import pytest

from upkeep.core.entries import FileEntry
from upkeep.core.exception import ConfigurationError, FormatError
from upkeep.core.manifest import Manifest, ManifestBuilder, Property
from upkeep.core.platforms import OS, os_matches


def _base(tmp_path: Path) -> ManifestBuilder:
    return Manifest.builder().base_uri("https://example.com/app/").base_path(str(tmp_path / "app"))


def test_os_parse_and_platform_mapping():
    assert OS.parse(None) is None
    assert OS.parse("") is None
    assert OS.parse("Linux") is OS.LINUX
    assert OS.parse(OS.MAC) is OS.MAC
    with pytest.raises(FormatError):
        OS.parse("beos")

    assert OS.from_platform("win32") is OS.WINDOWS
    assert OS.from_platform("darwin") is OS.MAC
    assert OS.from_platform("linux") is OS.LINUX
    assert OS.from_platform("freebsd13") is OS.OTHER

    assert os_matches(None, OS.WINDOWS)
    assert os_matches(OS.LINUX, OS.LINUX)
    assert not os_matches(OS.LINUX, OS.MAC)


def test_build_requires_base_uri_and_path(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        ManifestBuilder().base_path(str(tmp_path)).build()
    with pytest.raises(ConfigurationError):
        ManifestBuilder().base_uri("https://example.com/").build()
    with pytest.raises(ConfigurationError):
        ManifestBuilder().base_uri("relative/path").base_path(str(tmp_path)).build()


def test_build_defaults_timestamp_and_keeps_order(tmp_path: Path):
    m = (
        _base(tmp_path)
        .file(FileEntry(path="b.txt", checksum=1, size=1))
        .file(FileEntry(path="a.txt", checksum=2, size=2))
        .build()
    )
    assert m.timestamp is not None
    assert [f.path for f in m.files] == ["b.txt", "a.txt"]
    assert m.signature is None


def test_files_filtered_by_os(tmp_path: Path):
    m = (
        _base(tmp_path)
        .file(FileEntry(path="common.jar", checksum=1, size=1))
        .file(FileEntry(path="native.dll", checksum=2, size=2, os=OS.WINDOWS))
        .file(FileEntry(path="native.so", checksum=3, size=3, os=OS.LINUX))
        .build()
    )
    assert [f.path for f in m.files_for(OS.WINDOWS)] == ["common.jar", "native.dll"]
    assert [f.path for f in m.files_for(OS.LINUX)] == ["common.jar", "native.so"]
    assert [f.path for f in m.files_for(OS.MAC)] == ["common.jar"]


def test_file_variants_need_disjoint_os_filters(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        (
            _base(tmp_path)
            .file(FileEntry(path="bin/tool", checksum=1, size=1))
            .file(FileEntry(path="bin/tool", checksum=2, size=2, os=OS.MAC))
            .build()
        )
    with pytest.raises(ConfigurationError):
        (
            _base(tmp_path)
            .file(FileEntry(path="bin/tool", checksum=2, size=2, os=OS.LINUX))
            .file(FileEntry(path="bin/tool", checksum=1, size=1))
            .build()
        )

    m = (
        _base(tmp_path)
        .file(FileEntry(path="bin/tool", checksum=1, size=1, os=OS.LINUX))
        .file(FileEntry(path="bin/tool", checksum=2, size=2, os=OS.MAC))
        .build()
    )
    assert [f.checksum for f in m.files_for(OS.MAC)] == [2]
    assert [f.checksum for f in m.files_for(OS.LINUX)] == [1]
    assert m.files_for(OS.WINDOWS) == []


def test_duplicate_keys_with_same_filter_rejected(tmp_path: Path):
    with pytest.raises(ConfigurationError):
        _base(tmp_path).property("k", "1").property("k", "2").build()
    with pytest.raises(ConfigurationError):
        _base(tmp_path).property("k", "1", OS.LINUX).property("k", "2", "linux").build()
    with pytest.raises(ConfigurationError):
        (
            _base(tmp_path)
            .file(FileEntry(path="a", checksum=1, size=1, os=OS.MAC))
            .file(FileEntry(path="a", checksum=2, size=2, os=OS.MAC))
            .build()
        )
    # properties still allow a universal default next to OS-specific values
    _base(tmp_path).property("k", "1").property("k", "2", OS.LINUX).property("k", "3", OS.MAC).build()


def test_properties_resolve_per_os(tmp_path: Path):
    m = (
        _base(tmp_path)
        .property("app.name", "demo")
        .property("install.dir", "/opt/demo", OS.LINUX)
        .property("install.dir", "C:/demo", OS.WINDOWS)
        .property("install.dir", "/usr/local/demo")
        .build()
    )
    assert m.resolve_property("install.dir", platform=OS.LINUX) == "/opt/demo"
    assert m.resolve_property("install.dir", platform=OS.WINDOWS) == "C:/demo"
    assert m.resolve_property("install.dir", platform=OS.MAC) == "/usr/local/demo"
    assert m.resolve_property("missing", platform=OS.MAC) is None

    # first-applicable position is kept
    assert list(m.properties_map(platform=OS.LINUX)) == ["app.name", "install.dir"]
    assert [p.key for p in m.get_properties(platform=OS.MAC)] == ["app.name", "install.dir"]


def test_placeholders_expand_properties_and_builtins(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("UPKEEP_TEST_CHANNEL", "beta")
    m = (
        Manifest.builder()
        .base_uri("https://example.com/${channel}/")
        .base_path("${root}/${os.name}")
        .property("root", str(tmp_path))
        .property("channel", "${env.UPKEEP_TEST_CHANNEL}")
        .build()
    )
    assert m.resolved_base_uri(OS.LINUX) == "https://example.com/beta/"
    assert m.resolved_base_path(OS.LINUX) == Path(str(tmp_path)) / "linux"
    assert m.resolve_placeholders("${user.home}") == str(Path.home())


def test_placeholder_cycle_and_unknown(tmp_path: Path):
    m = _base(tmp_path).property("a", "${b}").property("b", "${a}").build()
    with pytest.raises(ConfigurationError):
        m.resolve_property("a", platform=OS.LINUX)
    with pytest.raises(ConfigurationError):
        m.resolve_placeholders("${nothing.here}", platform=OS.LINUX)


def test_targets_and_uris_use_resolved_bases(tmp_path: Path):
    m = (
        _base(tmp_path)
        .property("plugins", "ext")
        .file(FileEntry(path="lib/a.py", checksum=0, size=0))
        .file(FileEntry(path="p.py", checksum=0, size=0, target="${plugins}/p.py", uri="mirror/p.py"))
        .build()
    )
    a, p = m.files
    assert m.target_path(a, OS.LINUX) == tmp_path / "app" / "lib" / "a.py"
    assert m.target_path(p, OS.LINUX) == tmp_path / "app" / "ext" / "p.py"
    assert m.source_uri(a, OS.LINUX) == "https://example.com/app/lib/a.py"
    assert m.source_uri(p, OS.LINUX) == "https://example.com/app/mirror/p.py"


def test_equality_ignores_timestamp_and_signature(tmp_path: Path):
    m = _base(tmp_path).property("k", "v").build()
    assert m == m.with_timestamp(None).with_signature(b"sig")
    assert m != _base(tmp_path).property("k", "other").build()


def test_property_requires_key():
    with pytest.raises(ConfigurationError):
        Property(key="", value="x")

import tempfile
import shutil
from pathlib import Path

import sys

# Allow running tests without installing the package.
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import pytest
from upkeep.core.entries import FileEntry, crc32_bytes
from upkeep.core.manifest import Manifest, ManifestBuilder
from upkeep.core.platforms import OS
from upkeep.core.runtime.settings import Settings
from upkeep.core.signing import generate_key_pair


@pytest.fixture()
def temp_dir():
    d = Path(tempfile.mkdtemp(prefix="upkeep_test_"))
    try:
        yield d
    finally:
        shutil.rmtree(d, ignore_errors=True)


@pytest.fixture()
def settings():
    return Settings(
        workers=2,
        http_retries=0,
        verify_after_update=True,
        log_level="INFO",
    )


@pytest.fixture(scope="session")
def key_pair():
    return generate_key_pair(2048)


def entry_for(path: str, data: bytes, **kw) -> FileEntry:
    return FileEntry(path=path, checksum=crc32_bytes(data), size=len(data), **kw)


def publish(root: Path, files: dict) -> Path:
    """Write `files` (logical path -> bytes) under `root` as the remote side."""
    for rel, data in files.items():
        p = root.joinpath(*rel.split("/"))
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
    return root


def manifest_for(remote: Path, install: Path, files: dict, *, builder: ManifestBuilder | None = None) -> Manifest:
    b = builder or ManifestBuilder()
    b.base_uri(remote.as_uri()).base_path(str(install))
    for rel, data in files.items():
        b.file(entry_for(rel, data))
    return b.build()


@pytest.fixture()
def published(tmp_path: Path):
    """A remote tree with three files and a manifest pointing at an empty install dir."""
    files = {
        "app/main.py": b"print('hello')\n",
        "lib/util.py": b"def util():\n    return 42\n",
        "data/readme.txt": b"release notes\n" * 50,
    }
    remote = publish(tmp_path / "remote", files)
    install = tmp_path / "install"
    return remote, install, files, manifest_for(remote, install, files)


@pytest.fixture()
def linux():
    return OS.LINUX

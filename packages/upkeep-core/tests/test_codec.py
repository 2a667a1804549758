from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric import ed25519

from upkeep.core import codec
from upkeep.core.entries import FileEntry
from upkeep.core.exception import FormatError, SignatureError
from upkeep.core.manifest import Manifest
from upkeep.core.platforms import OS
from upkeep.core.signing import dump_public_key, generate_key_pair, load_public_key, sign, verify


def _manifest(tmp_path: Path, signer=None) -> Manifest:
    b = (
        Manifest.builder()
        .base_uri("https://example.com/app/")
        .base_path(str(tmp_path / "app"))
        .timestamp(datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc))
        .property("app.name", 'demo "quoted" & <tagged>')
        .property("java", "/usr/bin/java", OS.LINUX)
        .file(FileEntry(path="lib/core.jar", checksum=0xDEADBEEF, size=1234, classpath=True))
        .file(
            FileEntry(
                path="native/lib.dll",
                checksum=0x1,
                size=10,
                os=OS.WINDOWS,
                comment="line1\nline2\ttab",
                uri="https://mirror.example.org/lib.dll",
                target="bin/lib.dll",
                ignore_boot_conflict=True,
            )
        )
    )
    if signer is not None:
        b.signer(signer)
    return b.build()


def test_round_trip_preserves_everything(tmp_path: Path):
    m = _manifest(tmp_path)
    data = codec.write(m)
    back = codec.read(data)
    assert back == m
    assert back.timestamp == m.timestamp
    assert back.files[1].comment == "line1\nline2\ttab"
    assert back.properties[0].value == 'demo "quoted" & <tagged>'
    assert codec.write(back) == data


def test_writer_layout_is_canonical(tmp_path: Path):
    text = codec.write(_manifest(tmp_path)).decode("utf-8")
    lines = text.splitlines()
    assert lines[0] == '<?xml version="1.0" encoding="UTF-8"?>'
    assert lines[1].startswith('<configuration baseUri="https://example.com/app/" basePath=')
    assert '    <file path="lib/core.jar" checksum="deadbeef" size="1234" classpath="true"/>' in lines
    assert text.endswith("</configuration>\n")
    # defaults are omitted
    assert "modulepath" not in text


def test_empty_sections(tmp_path: Path):
    m = Manifest.builder().base_uri("https://example.com/").base_path(str(tmp_path)).build()
    text = codec.write(m).decode("utf-8")
    assert "  <properties/>" in text
    assert "  <files/>" in text
    assert codec.read(text) == m


@pytest.mark.parametrize(
    "doc",
    [
        "not xml at all",
        "<configuration/>",
        '<manifest baseUri="https://x/" basePath="/tmp"/>',
        '<configuration baseUri="https://x/" basePath="/tmp"><files><file path="a" checksum="zz" size="1"/></files></configuration>',
        '<configuration baseUri="https://x/" basePath="/tmp"><files><file path="a" checksum="01" size="-1"/></files></configuration>',
        '<configuration baseUri="https://x/" basePath="/tmp"><files><file path="a" size="1"/></files></configuration>',
        '<configuration baseUri="https://x/" basePath="/tmp"><files><file path="a" checksum="1" size="1" os="plan9"/></files></configuration>',
        '<configuration baseUri="https://x/" basePath="/tmp"><properties><property key="k"/></properties></configuration>',
        '<configuration baseUri="https://x/" basePath="/tmp" timestamp="yesterday"/>',
        '<configuration baseUri="https://x/" basePath="/tmp" signature="!!!"/>',
        '<configuration baseUri="https://x/" basePath="/tmp"><properties><property key="k" value="1"/><property key="k" value="2"/></properties></configuration>',
        '<configuration baseUri="https://x/" basePath="/tmp"><files><file path="a" checksum="1" size="1"/><file path="a" checksum="2" size="1" os="linux"/></files></configuration>',
    ],
)
def test_malformed_documents_raise_format_error(doc: str):
    with pytest.raises(FormatError):
        codec.read(doc)


def test_write_file_and_read_file(tmp_path: Path):
    m = _manifest(tmp_path)
    out = codec.write_file(m, tmp_path / "cfg" / "manifest.xml")
    assert out.exists()
    assert codec.read_file(out) == m
    assert not [p for p in out.parent.iterdir() if p.name.endswith(".tmp")]


def test_signed_manifest_verifies(tmp_path: Path, key_pair):
    priv, pub = key_pair
    m = _manifest(tmp_path, signer=priv)
    assert m.signature
    data = codec.write(m)
    back = codec.read(data, public_key=pub)
    assert back == m
    assert back.signature == m.signature

    # a PEM round trip of the key works the same
    back2 = codec.read(data, public_key=load_public_key(dump_public_key(pub)))
    assert back2 == m


def test_tampered_manifest_fails_verification(tmp_path: Path, key_pair):
    priv, pub = key_pair
    data = codec.write(_manifest(tmp_path, signer=priv)).decode("utf-8")
    tampered = data.replace('size="1234"', 'size="1235"')
    assert tampered != data
    # still parses without a key
    codec.read(tampered)
    with pytest.raises(SignatureError):
        codec.read(tampered, public_key=pub)

    # the properties section is covered by the signature as well
    tampered = data.replace('value="/usr/bin/java"', 'value="/tmp/java"')
    assert tampered != data
    assert codec.read(tampered).resolve_property("java", platform=OS.LINUX) == "/tmp/java"
    with pytest.raises(SignatureError):
        codec.read(tampered, public_key=pub)


def test_unsigned_or_wrong_key_fails(tmp_path: Path, key_pair):
    _priv, pub = key_pair
    with pytest.raises(SignatureError):
        codec.read(codec.write(_manifest(tmp_path)), public_key=pub)

    other_priv, _other_pub = generate_key_pair(2048)
    signed_by_other = codec.write(_manifest(tmp_path, signer=other_priv))
    with pytest.raises(SignatureError):
        codec.read(signed_by_other, public_key=pub)


def test_ed25519_keys_sign_and_verify():
    priv = ed25519.Ed25519PrivateKey.generate()
    sig = sign(b"payload", priv)
    assert verify(b"payload", sig, priv.public_key()) is True
    assert verify(b"payload!", sig, priv.public_key()) is False

"""XML manifest codec.

The writer is the canonical serialization: attribute order, indentation and
element order are fixed, optional attributes are omitted when they hold their
default, and sections keep insertion order. Identical manifests therefore
always produce identical bytes, which is what signatures are computed over.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import tempfile
import xml.etree.ElementTree as ET
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple, Union

from upkeep.core.entries import FileEntry
from upkeep.core.exception import ConfigurationError, FormatError, SignatureError
from upkeep.core.manifest import Manifest, ManifestBuilder, Property
from upkeep.core.platforms import OS

log = logging.getLogger("upkeep.core.codec")

ROOT = "configuration"

_ATTR_ENTITIES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&apos;",
    "\n": "&#10;",
    "\r": "&#13;",
    "\t": "&#9;",
}


def escape_attr(value: str) -> str:
    return "".join(_ATTR_ENTITIES.get(ch, ch) for ch in str(value))


def _attrs(pairs: List[Tuple[str, Optional[str]]]) -> str:
    return "".join(f' {k}="{escape_attr(v)}"' for k, v in pairs if v is not None)


def _flag(value: bool) -> Optional[str]:
    return "true" if value else None


def write(manifest: Manifest) -> bytes:
    root_attrs = _attrs(
        [
            ("baseUri", manifest.base_uri),
            ("basePath", manifest.base_path),
            ("timestamp", manifest.timestamp.isoformat() if manifest.timestamp else None),
            ("signature", base64.b64encode(manifest.signature).decode("ascii") if manifest.signature else None),
        ]
    )
    lines = ['<?xml version="1.0" encoding="UTF-8"?>', f"<{ROOT}{root_attrs}>"]

    if manifest.properties:
        lines.append("  <properties>")
        for p in manifest.properties:
            attrs = _attrs([("key", p.key), ("value", p.value), ("os", p.os.value if p.os else None)])
            lines.append(f"    <property{attrs}/>")
        lines.append("  </properties>")
    else:
        lines.append("  <properties/>")

    if manifest.files:
        lines.append("  <files>")
        for f in manifest.files:
            attrs = _attrs(
                [
                    ("path", f.path),
                    ("checksum", f.checksum_hex),
                    ("size", str(int(f.size))),
                    ("os", f.os.value if f.os else None),
                    ("classpath", _flag(f.classpath)),
                    ("modulepath", _flag(f.modulepath)),
                    ("ignoreBootConflict", _flag(f.ignore_boot_conflict)),
                    ("comment", f.comment or None),
                    ("uri", f.uri),
                    ("target", f.target),
                ]
            )
            lines.append(f"    <file{attrs}/>")
        lines.append("  </files>")
    else:
        lines.append("  <files/>")

    lines.append(f"</{ROOT}>")
    return ("\n".join(lines) + "\n").encode("utf-8")


def canonical_bytes(manifest: Manifest) -> bytes:
    """The exact signing input: the serialization without the signature."""
    return write(manifest.with_signature(None))


def _parse_bool(raw: Optional[str], *, where: str) -> bool:
    if raw is None:
        return False
    v = raw.strip().lower()
    if v == "true":
        return True
    if v == "false":
        return False
    raise FormatError(f"{where}: expected true/false, got {raw!r}")


def _required(el: ET.Element, name: str, *, where: str) -> str:
    v = el.get(name)
    if v is None:
        raise FormatError(f"{where}: missing required attribute {name!r}")
    return v


def _parse_file(el: ET.Element, idx: int) -> FileEntry:
    where = f"files[{idx}]"
    path = _required(el, "path", where=where)
    try:
        checksum = int(_required(el, "checksum", where=where), 16)
        size = int(_required(el, "size", where=where))
    except ValueError as e:
        raise FormatError(f"{where}: invalid checksum/size for {path!r}") from e
    try:
        return FileEntry(
            path=path,
            checksum=checksum,
            size=size,
            os=OS.parse(el.get("os")),
            classpath=_parse_bool(el.get("classpath"), where=where),
            modulepath=_parse_bool(el.get("modulepath"), where=where),
            ignore_boot_conflict=_parse_bool(el.get("ignoreBootConflict"), where=where),
            comment=el.get("comment") or "",
            uri=el.get("uri") or None,
            target=el.get("target") or None,
        )
    except ConfigurationError as e:
        raise FormatError(f"{where}: {e}") from e


def _parse(data: Union[bytes, str]) -> Manifest:
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise FormatError(f"manifest is not well-formed XML: {e}") from e
    if root.tag != ROOT:
        raise FormatError(f"unexpected root element {root.tag!r}, expected {ROOT!r}")

    base_uri = _required(root, "baseUri", where=ROOT)
    base_path = _required(root, "basePath", where=ROOT)

    timestamp = None
    raw_ts = root.get("timestamp")
    if raw_ts:
        try:
            timestamp = datetime.fromisoformat(raw_ts)
        except ValueError as e:
            raise FormatError(f"invalid timestamp: {raw_ts!r}") from e

    signature = None
    raw_sig = root.get("signature")
    if raw_sig:
        try:
            signature = base64.b64decode(raw_sig, validate=True)
        except (binascii.Error, ValueError) as e:
            raise FormatError("signature is not valid base64") from e

    builder = ManifestBuilder().base_uri(base_uri).base_path(base_path)
    try:
        for sect in root.findall("properties"):
            for idx, el in enumerate(sect.findall("property")):
                where = f"properties[{idx}]"
                key = _required(el, "key", where=where)
                value = _required(el, "value", where=where)
                builder.properties([Property(key=key, value=value, os=OS.parse(el.get("os")))])
        for sect in root.findall("files"):
            builder.files(_parse_file(el, idx) for idx, el in enumerate(sect.findall("file")))
        manifest = builder.build()
    except ConfigurationError as e:
        raise FormatError(f"invalid manifest: {e}") from e
    return manifest.with_timestamp(timestamp).with_signature(signature)


def read(data: Union[bytes, str], public_key=None) -> Manifest:
    """Parse a manifest document; verify its signature when a key is given."""
    manifest = _parse(data)
    if public_key is None:
        return manifest

    if not manifest.signature:
        raise SignatureError("manifest is not signed")

    from upkeep.core.signing import verify

    try:
        ok = verify(canonical_bytes(manifest), manifest.signature, public_key)
    except (TypeError, ValueError) as e:
        raise SignatureError(f"signature cannot be checked with the given key: {e}") from e
    if not ok:
        raise SignatureError("manifest signature does not match")
    log.debug("manifest signature verified base_uri=%s", manifest.base_uri)
    return manifest


def read_file(path: Union[str, Path], public_key=None) -> Manifest:
    return read(Path(path).read_bytes(), public_key)


def write_file(manifest: Manifest, path: Union[str, Path]) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{out.name}.", suffix=".tmp", dir=str(out.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(write(manifest))
        os.replace(tmp, out)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    return out

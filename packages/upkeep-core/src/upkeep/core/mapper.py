"""Flat key/value XML documents.

Used for small side files next to a manifest (launcher arguments, cached
answers). Layout::

    <map>
        <item key="..." value="..."/>
    </map>
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Dict, Mapping, Optional

from upkeep.core.codec import escape_attr
from upkeep.core.exception import FormatError


def write_map(mapping: Mapping[Optional[str], Optional[str]], root: str = "map") -> str:
    lines = []
    for key, value in mapping.items():
        if key is None or value is None:
            continue
        lines.append(f'    <item key="{escape_attr(key)}" value="{escape_attr(value)}"/>')
    if not lines:
        return f"<{root}/>\n"
    return "\n".join([f"<{root}>", *lines, f"</{root}>"]) + "\n"


def read_map(text: str, root: str = "map") -> Dict[str, str]:
    try:
        el = ET.fromstring(text)
    except ET.ParseError as e:
        raise FormatError(f"key/value document is not well-formed XML: {e}") from e
    if el.tag != root:
        raise FormatError(f"unexpected root element {el.tag!r}, expected {root!r}")

    out: Dict[str, str] = {}
    for item in el.findall("item"):
        key = item.get("key")
        value = item.get("value")
        if key is None or value is None:
            continue
        out[key] = value
    return out

from __future__ import annotations

import sys
from enum import Enum
from typing import Optional

from upkeep.core.exception import FormatError


class OS(str, Enum):
    """Operating system filter for properties and file entries.

    "Universal" (applies everywhere) is represented as ``None`` rather than a
    member, so a filter is always ``Optional[OS]``.
    """

    WINDOWS = "windows"
    MAC = "mac"
    LINUX = "linux"
    OTHER = "other"

    @classmethod
    def current(cls) -> "OS":
        return cls.from_platform(sys.platform)

    @classmethod
    def from_platform(cls, platform: str) -> "OS":
        p = (platform or "").lower()
        if p.startswith("win") or p.startswith("cygwin"):
            return cls.WINDOWS
        if p.startswith("darwin"):
            return cls.MAC
        if p.startswith("linux"):
            return cls.LINUX
        return cls.OTHER

    @classmethod
    def parse(cls, token: Optional[str]) -> Optional["OS"]:
        """Parse a wire token; ``None`` or an empty string means universal."""
        if token is None:
            return None
        if isinstance(token, OS):
            return token
        t = str(token).strip().lower()
        if not t:
            return None
        for member in cls:
            if member.value == t:
                return member
        raise FormatError(f"Unknown os token: {token!r}")


def os_matches(filter_os: Optional[OS], target: OS) -> bool:
    return filter_os is None or filter_os == target


def effective_os(platform: Optional[OS] = None) -> OS:
    return platform if platform is not None else OS.current()

from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Protocol, Sequence

from upkeep.core.exception import LaunchError
from upkeep.core.manifest import Manifest
from upkeep.core.platforms import OS, effective_os

log = logging.getLogger("upkeep.core.launch")

MAIN_MODULE = "default.launcher.main.module"
ARGUMENT_PREFIX = "default.launcher.argument."
ENV_PREFIX = "default.launcher.env."

_MODULE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


@dataclass(frozen=True)
class LaunchContext:
    """What a launcher needs to start the installed application."""

    manifest: Manifest
    platform: OS
    classpath: List[Path] = field(default_factory=list)
    modulepath: List[Path] = field(default_factory=list)
    properties: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def create(cls, manifest: Manifest, platform: OS | None = None) -> "LaunchContext":
        plat = effective_os(platform)
        classpath: List[Path] = []
        modulepath: List[Path] = []
        for entry in manifest.files_for(plat):
            if not (entry.classpath or entry.modulepath):
                continue
            target = manifest.target_path(entry, plat)
            if entry.modulepath:
                modulepath.append(target)
            if entry.classpath:
                classpath.append(target)
        return cls(
            manifest=manifest,
            platform=plat,
            classpath=classpath,
            modulepath=modulepath,
            properties=manifest.properties_map(platform=plat),
        )

    @property
    def base_path(self) -> Path:
        return self.manifest.resolved_base_path(self.platform)


class Launcher(Protocol):
    def run(self, context: LaunchContext) -> Any:
        ...


def _numbered(properties: Dict[str, str], prefix: str) -> List[str]:
    found = []
    for key, value in properties.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):]
        try:
            n = int(suffix)
        except ValueError:
            log.warning("ignoring launcher argument with non-numeric index: %s", key)
            continue
        found.append((n, value))
    return [v for _, v in sorted(found)]


class DefaultLauncher:
    """Starts the application in a child process.

    Properties read from the manifest:
      - default.launcher.main.module: run ``python -m <module>``
      - default.launcher.argument.<n>: arguments, ordered by n
      - default.launcher.env.<NAME>: extra environment variables

    Without a main module the arguments are run as a command. Arguments passed
    to the constructor replace the argument properties.
    """

    def __init__(
        self,
        args: Sequence[str] | None = None,
        runner: Callable[..., Any] = subprocess.run,
        *,
        python: str | None = None,
    ):
        self.args = list(args) if args is not None else None
        self.runner = runner
        self.python = python or sys.executable

    def command(self, context: LaunchContext) -> List[str]:
        props = context.properties
        args = self.args if self.args else _numbered(props, ARGUMENT_PREFIX)
        main = (props.get(MAIN_MODULE) or "").strip()

        if main:
            if not _MODULE_RE.match(main):
                raise LaunchError(f"{main!r} is not a valid Python module name")
            return [self.python, "-m", main, *args]
        if not args:
            raise LaunchError(
                f"You must provide either a main module ({MAIN_MODULE}) or arguments ({ARGUMENT_PREFIX}<n>)"
            )
        return list(args)

    def environment(self, context: LaunchContext) -> Dict[str, str]:
        env = dict(os.environ)
        for key, value in context.properties.items():
            if key.startswith(ENV_PREFIX) and len(key) > len(ENV_PREFIX):
                env[key[len(ENV_PREFIX):]] = value

        paths = [str(p) for p in [*context.modulepath, *context.classpath]]
        if env.get("PYTHONPATH"):
            paths.append(env["PYTHONPATH"])
        if paths:
            env["PYTHONPATH"] = os.pathsep.join(paths)
        return env

    def run(self, context: LaunchContext) -> Any:
        cmd = self.command(context)
        env = self.environment(context)
        base = context.base_path
        cwd = str(base) if base.is_dir() else None
        log.info("launching %s", " ".join(cmd))
        try:
            return self.runner(cmd, env=env, cwd=cwd, check=False)
        except OSError as e:
            raise LaunchError(f"cannot start {cmd[0]}: {e}") from e


def launch(manifest: Manifest, launcher: Launcher | None = None, *, platform: OS | None = None) -> Any:
    """Build a LaunchContext for `manifest` and hand it to `launcher`."""
    context = LaunchContext.create(manifest, platform)
    return (launcher or DefaultLauncher()).run(context)

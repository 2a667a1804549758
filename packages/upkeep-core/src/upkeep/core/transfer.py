"""Explicit field transfer between cooperating objects.

An object takes part by implementing ``exported_fields()`` and returning
ExportedField descriptors. A field with a getter can be read from, a field
with a setter can be written to. Names are matched exactly; nothing is
discovered by introspection.

    class Config:
        def __init__(self):
            self.token = None

        def exported_fields(self):
            return [attribute(self, "token", required=True)]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from upkeep.core.exception import ConfigurationError, UnsatisfiedTransferError

log = logging.getLogger("upkeep.core.transfer")


@dataclass(frozen=True)
class ExportedField:
    name: str
    getter: Optional[Callable[[], Any]] = None
    setter: Optional[Callable[[Any], None]] = None
    # only meaningful on the receiving side
    required: bool = False


def attribute(
    obj: Any,
    attr: str,
    *,
    name: str | None = None,
    required: bool = False,
    readable: bool = True,
    writable: bool = True,
) -> ExportedField:
    """Export a plain attribute of `obj`, optionally under another name."""
    return ExportedField(
        name=name or attr,
        getter=(lambda: getattr(obj, attr)) if readable else None,
        setter=(lambda v: setattr(obj, attr, v)) if writable else None,
        required=required,
    )


def _fields(obj: Any) -> List[ExportedField]:
    fn = getattr(obj, "exported_fields", None)
    if fn is None:
        raise ConfigurationError(f"{type(obj).__name__} does not implement exported_fields()")
    return list(fn())


def _plan(source: Any, target: Any) -> List[Tuple[ExportedField, Any]]:
    """Read every value the target will receive; write nothing yet."""
    readable: Dict[str, ExportedField] = {}
    for f in _fields(source):
        if f.getter is None:
            continue
        if f.name in readable:
            raise ConfigurationError(f"{type(source).__name__} exports {f.name!r} more than once")
        readable[f.name] = f

    plan: List[Tuple[ExportedField, Any]] = []
    for f in _fields(target):
        if f.setter is None:
            continue
        src = readable.get(f.name)
        if src is None:
            if f.required:
                raise UnsatisfiedTransferError(f.name, target)
            continue
        plan.append((f, src.getter()))
    return plan


def _apply(plan: Iterable[Tuple[ExportedField, Any]]) -> int:
    n = 0
    for f, value in plan:
        f.setter(value)  # type: ignore[misc]
        n += 1
    return n


def _notify(obj: Any, other: Any) -> None:
    cb = getattr(obj, "after_transfer", None)
    if cb is not None:
        cb(other)


def transfer(source: Any, target: Any, *, bidirectional: bool = False) -> int:
    """Copy matching field values from `source` to `target`.

    With `bidirectional`, both directions are read before either side is
    written, so the two objects swap values rather than converge. Returns the
    number of fields written.
    """
    forward = _plan(source, target)
    backward = _plan(target, source) if bidirectional else []

    n = _apply(forward) + _apply(backward)
    log.debug(
        "transfer %s -> %s fields=%d bidirectional=%s",
        type(source).__name__,
        type(target).__name__,
        n,
        bidirectional,
    )

    _notify(target, source)
    if bidirectional:
        _notify(source, target)
    return n


class PropertyBag:
    """Adapts a flat mapping (for example manifest properties) to exported fields.

    Every key is both readable and writable. Names listed in `required` are
    writable even when absent and must be supplied when the bag receives.
    """

    def __init__(self, mapping: Mapping[str, Any] | None = None, *, required: Iterable[str] = ()):
        self.values: Dict[str, Any] = dict(mapping or {})
        self.required = tuple(required)

    def _setter(self, key: str) -> Callable[[Any], None]:
        def _set(v: Any) -> None:
            self.values[key] = v

        return _set

    def exported_fields(self) -> List[ExportedField]:
        out: List[ExportedField] = []
        for key in self.values:
            out.append(
                ExportedField(
                    name=key,
                    getter=(lambda k=key: self.values[k]),
                    setter=self._setter(key),
                    required=key in self.required,
                )
            )
        for key in self.required:
            if key not in self.values:
                out.append(ExportedField(name=key, setter=self._setter(key), required=True))
        return out

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

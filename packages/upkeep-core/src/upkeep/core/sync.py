from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
import threading
import zlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from upkeep.core.concurrency import run_thread_pool
from upkeep.core.entries import FileEntry
from upkeep.core.exception import DownloadIntegrityError, SyncAborted
from upkeep.core.manifest import Manifest
from upkeep.core.observability import SyncObserver, SyncSummary, UpdateHandler
from upkeep.core.platforms import OS
from upkeep.core.resolver import Classified, classify
from upkeep.core.runtime.settings import Settings, load_settings
from upkeep.core.sources import DefaultSource, FileSource

log = logging.getLogger("upkeep.core.sync")


class OutcomeStatus(str, Enum):
    UPDATED = "UPDATED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class EntryOutcome:
    entry: FileEntry
    target: Path
    status: OutcomeStatus
    error: Optional[BaseException] = None
    received: int = 0


@dataclass
class UpdateResult:
    """Per-entry outcomes of one sync run.

    Entries that were already current produce no outcome. `requires_update`
    holds the post-run re-classification when verification ran, else None.
    """

    platform: OS
    outcomes: List[EntryOutcome] = field(default_factory=list)
    requires_update: Optional[bool] = None
    summary: Optional[SyncSummary] = None

    def _with(self, status: OutcomeStatus) -> List[EntryOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def fetched(self) -> List[EntryOutcome]:
        return self._with(OutcomeStatus.UPDATED)

    @property
    def failed(self) -> List[EntryOutcome]:
        return self._with(OutcomeStatus.FAILED)

    @property
    def skipped(self) -> List[EntryOutcome]:
        return self._with(OutcomeStatus.SKIPPED)

    @property
    def cancelled(self) -> List[EntryOutcome]:
        return self._with(OutcomeStatus.CANCELLED)

    @property
    def ok(self) -> bool:
        return all(o.status == OutcomeStatus.UPDATED for o in self.outcomes)

    def as_dict(self) -> dict:
        return {
            "platform": self.platform.value,
            "ok": self.ok,
            "requires_update": self.requires_update,
            "outcomes": [
                {
                    "path": o.entry.path,
                    "target": str(o.target),
                    "status": o.status.value,
                    "received": o.received,
                    "error": str(o.error) if o.error else None,
                }
                for o in self.outcomes
            ],
        }


class _Cancelled(Exception):
    pass


def _fetch_verified(
    item: Classified,
    *,
    source: FileSource,
    dest_dir: Path,
    chunk_size: int,
    cancel: Optional[threading.Event],
    observer: SyncObserver,
) -> Tuple[Path, int]:
    """Download one entry into a temp file under `dest_dir` and verify it.

    The temp file is removed on any failure or cancellation; on success the
    caller owns it.
    """
    entry = item.entry
    dest_dir.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{item.target.name}.", suffix=".part", dir=str(dest_dir))
    tmp_path = Path(tmp)
    crc = 0
    size = 0
    try:
        with os.fdopen(fd, "wb") as out, contextlib.closing(source.stream(item.source_uri, chunk_size=chunk_size)) as chunks:
            for chunk in chunks:
                if cancel is not None and cancel.is_set():
                    raise _Cancelled(entry.path)
                out.write(chunk)
                crc = zlib.crc32(chunk, crc)
                size += len(chunk)
                if size > entry.size:
                    break
                observer.entry_progress(path=entry.path, received=size, size=entry.size)
        crc &= 0xFFFFFFFF
        if crc != entry.checksum or size != entry.size:
            raise DownloadIntegrityError(
                path=entry.path,
                expected_checksum=entry.checksum,
                actual_checksum=crc,
                expected_size=entry.size,
                actual_size=size,
            )
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return tmp_path, size


def _place(tmp: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    # commit point: the target is either the old file or the complete new one
    os.replace(tmp, target)


def _run(
    manifest: Manifest,
    *,
    commit: Callable[[Classified, Path], None],
    dest_dir_for: Callable[[Classified], Path],
    platform: Optional[OS],
    settings: Optional[Settings],
    source: Optional[FileSource],
    handler: Optional[UpdateHandler],
    abort_on_failure: Optional[bool],
    workers: Optional[int],
    cancel: Optional[threading.Event],
) -> Tuple[UpdateResult, Optional[BaseException], SyncObserver, Settings]:
    settings = settings or load_settings()
    plat = platform or settings.target_os or OS.current()
    abort = settings.abort_on_failure if abort_on_failure is None else bool(abort_on_failure)

    # Classification completes before any fetch begins.
    resolution = classify(manifest, platform=plat)
    pending = resolution.pending

    observer = SyncObserver(settings=settings, logger=log, platform=plat.value, handler=handler)
    observer.sync_start(total=len(resolution.entries), pending=len(pending))

    own_source = source is None
    src: FileSource = source if source is not None else DefaultSource(settings)
    stop = threading.Event()
    errors: List[BaseException] = []
    errors_lock = threading.Lock()

    def _one(item: Classified) -> EntryOutcome:
        path = item.entry.path
        if cancel is not None and cancel.is_set():
            observer.entry_end(path=path, status=OutcomeStatus.CANCELLED.value)
            return EntryOutcome(entry=item.entry, target=item.target, status=OutcomeStatus.CANCELLED)
        observer.entry_start(path=path, uri=item.source_uri, size=item.entry.size)
        try:
            tmp, received = _fetch_verified(
                item,
                source=src,
                dest_dir=dest_dir_for(item),
                chunk_size=settings.chunk_size,
                cancel=cancel,
                observer=observer,
            )
            try:
                commit(item, tmp)
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise
        except _Cancelled:
            observer.entry_end(path=path, status=OutcomeStatus.CANCELLED.value)
            return EntryOutcome(entry=item.entry, target=item.target, status=OutcomeStatus.CANCELLED)
        except Exception as e:
            with errors_lock:
                errors.append(e)
            observer.entry_end(path=path, status=OutcomeStatus.FAILED.value, error=e)
            raise
        observer.entry_end(path=path, status=OutcomeStatus.UPDATED.value)
        return EntryOutcome(entry=item.entry, target=item.target, status=OutcomeStatus.UPDATED, received=received)

    try:
        raw = run_thread_pool(pending, _one, workers=workers or settings.workers, fail_fast=abort, stop=stop)
    finally:
        if own_source:
            src.close()

    result = UpdateResult(platform=plat)
    for item, (outcome, error) in zip(pending, raw):
        if outcome is not None:
            result.outcomes.append(outcome)
        elif error is not None:
            result.outcomes.append(EntryOutcome(entry=item.entry, target=item.target, status=OutcomeStatus.FAILED, error=error))
        else:
            status = OutcomeStatus.CANCELLED if cancel is not None and cancel.is_set() else OutcomeStatus.SKIPPED
            result.outcomes.append(EntryOutcome(entry=item.entry, target=item.target, status=status))

    first_error = errors[0] if (abort and errors) else None
    return result, first_error, observer, settings


def update(
    manifest: Manifest,
    *,
    platform: Optional[OS] = None,
    settings: Optional[Settings] = None,
    source: Optional[FileSource] = None,
    handler: Optional[UpdateHandler] = None,
    abort_on_failure: Optional[bool] = None,
    workers: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    verify: Optional[bool] = None,
) -> UpdateResult:
    """Bring the local installation in line with `manifest`.

    Every Missing/Stale entry is downloaded next to its target, verified, and
    then moved into place. Failures are collected per entry unless
    `abort_on_failure` is set, in which case SyncAborted is raised (chained
    from the first failure) after in-flight entries settle.
    """
    result, first_error, observer, settings = _run(
        manifest,
        commit=lambda item, tmp: _place(tmp, item.target),
        dest_dir_for=lambda item: item.target.parent,
        platform=platform,
        settings=settings,
        source=source,
        handler=handler,
        abort_on_failure=abort_on_failure,
        workers=workers,
        cancel=cancel,
    )

    do_verify = settings.verify_after_update if verify is None else bool(verify)
    if do_verify and first_error is None and not (cancel is not None and cancel.is_set()):
        result.requires_update = classify(manifest, platform=result.platform).requires_update

    result.summary = observer.sync_end()
    if first_error is not None:
        raise SyncAborted(f"sync aborted after first failure: {first_error}", result=result) from first_error
    return result


def stage(
    manifest: Manifest,
    bundle_path: str | Path,
    *,
    platform: Optional[OS] = None,
    settings: Optional[Settings] = None,
    source: Optional[FileSource] = None,
    handler: Optional[UpdateHandler] = None,
    abort_on_failure: Optional[bool] = None,
    workers: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    password: str | None = None,
) -> UpdateResult:
    """Download pending entries into a bundle instead of the installation.

    The bundle carries the manifest plus every successfully fetched file and
    can be installed later with `upkeep.core.bundle.unpack(...).extract()`.
    The installation directory is only read.
    """
    from upkeep.core.bundle import pack_file

    staging = Path(tempfile.mkdtemp(prefix="upkeep_stage_"))
    staged: Dict[str, Path] = {}
    staged_lock = threading.Lock()

    def _keep(item: Classified, tmp: Path) -> None:
        with staged_lock:
            staged[item.entry.path] = tmp

    try:
        result, first_error, observer, _settings = _run(
            manifest,
            commit=_keep,
            dest_dir_for=lambda item: staging,
            platform=platform,
            settings=settings,
            source=source,
            handler=handler,
            abort_on_failure=abort_on_failure,
            workers=workers,
            cancel=cancel,
        )
        result.summary = observer.sync_end()
        if first_error is not None:
            raise SyncAborted(f"staging aborted after first failure: {first_error}", result=result) from first_error
        pack_file(manifest, bundle_path, files=staged, platform=result.platform, password=password)
        log.info("staged %d file(s) into %s", len(staged), bundle_path)
        return result
    finally:
        shutil.rmtree(staging, ignore_errors=True)

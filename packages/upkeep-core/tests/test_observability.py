from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest

from upkeep.core.observability import SyncObserver, UpdateHandler, load_update_handler, log_event
from upkeep.core.runtime.settings import Settings


def test_log_event_text(caplog: pytest.LogCaptureFixture):
    logger = logging.getLogger("upkeep.core.test")
    caplog.set_level("INFO")
    log_event(logger, settings=Settings(), level=logging.INFO, event="entry_end", path="a.txt", status="UPDATED")
    assert caplog.records[-1].getMessage() == "entry_end path=a.txt status=UPDATED"


def test_log_event_json(caplog: pytest.LogCaptureFixture):
    logger = logging.getLogger("upkeep.core.test")
    caplog.set_level("INFO")
    log_event(logger, settings=Settings(log_format="json"), level=logging.INFO, event="sync_start", total=3)
    data = json.loads(caplog.records[-1].getMessage())
    assert data["event"] == "sync_start"
    assert data["total"] == 3
    assert isinstance(data["ts_ms"], int)


def test_handler_module_is_loaded(tmp_path: Path, monkeypatch):
    (tmp_path / "upkeep_test_handler.py").write_text(
        "from upkeep.core.observability import UpdateHandler\n"
        "class H(UpdateHandler):\n"
        "    pass\n"
        "HANDLER = H()\n",
        encoding="utf-8",
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    sys.modules.pop("upkeep_test_handler", None)
    handler = load_update_handler(Settings(handler_module="upkeep_test_handler"))
    assert type(handler).__name__ == "H"
    assert type(load_update_handler(Settings())) is UpdateHandler


def test_observer_counts_and_swallows_handler_errors(caplog: pytest.LogCaptureFixture):
    class Broken(UpdateHandler):
        def on_entry_start(self, **kw):
            raise RuntimeError("boom")

    caplog.set_level("INFO")
    obs = SyncObserver(settings=Settings(), logger=logging.getLogger("upkeep.core.test"), platform="linux", handler=Broken())
    obs.sync_start(total=2, pending=2)
    obs.entry_start(path="a", uri="file:///a", size=1)
    obs.entry_end(path="a", status="UPDATED")
    obs.entry_end(path="b", status="FAILED", error=ValueError("bad"))
    summary = obs.sync_end()

    assert summary.status_counts == {"UPDATED": 1, "FAILED": 1}
    assert summary.as_dict()["platform"] == "linux"
    assert any("UpdateHandler.on_entry_start failed" in r.getMessage() for r in caplog.records)

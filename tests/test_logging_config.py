from __future__ import annotations

import io
import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from ytpm.app.config import AppSettings
from ytpm.app.logging_config import ROOT_LOGGER_NAME, configure_application_logging
from ytpm.app.telemetry import TELEMETRY_LOGGER_NAME, StructuredLogTelemetrySink


@pytest.fixture
def restore_loggers() -> Iterator[None]:
    yield
    for name in (ROOT_LOGGER_NAME, TELEMETRY_LOGGER_NAME):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True


def _json_lines(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


@pytest.mark.usefixtures("restore_loggers")
def test_application_logs_reach_console_and_json_file(tmp_path: Path) -> None:
    console = io.StringIO()
    settings = AppSettings(log_dir=tmp_path / "logs", log_level="warning")

    files = configure_application_logging(settings, console=console)
    logging.getLogger("ytpm.export").info("batch done source=%s", "PL1")
    logging.getLogger("ytpm.export").warning("quota ceiling reached")

    assert files.application == tmp_path / "logs" / "ytpm.log"
    events = [entry["event"] for entry in _json_lines(files.application)]
    assert "batch done source=PL1" in events
    assert "quota ceiling reached" in events
    assert "quota ceiling reached" in console.getvalue()
    assert "batch done" not in console.getvalue()


@pytest.mark.usefixtures("restore_loggers")
def test_telemetry_events_go_only_to_telemetry_file(tmp_path: Path) -> None:
    console = io.StringIO()
    settings = AppSettings(log_dir=tmp_path / "logs")

    files = configure_application_logging(settings, console=console)
    StructuredLogTelemetrySink().emit(
        event_name="export.batch.finish",
        attributes={"videos_imported": 2},
    )

    entries = _json_lines(files.telemetry)
    assert entries[-1]["telemetry_event"] == "export.batch.finish"
    assert entries[-1]["videos_imported"] == 2
    assert "export.batch.finish" not in console.getvalue()
    assert "export.batch.finish" not in files.application.read_text(encoding="utf-8")

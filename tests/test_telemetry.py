from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from ytpm.app.telemetry import (
    StructuredLogTelemetrySink,
    TelemetryClient,
    build_telemetry_client,
    pseudonymize,
)


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def test_telemetry_client_redacts_sensitive_fields() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(
        "export.batch.finish",
        request_id="req_123",
        access_token="ya29.secret",
        Authorization="Bearer abc",
        next_page_token="CDIQAA",
        videos_imported=3,
    )

    assert len(sink.events) == 1
    event_name, attributes = sink.events[0]
    assert event_name == "export.batch.finish"
    assert attributes["request_id"] == "req_123"
    assert attributes["videos_imported"] == 3
    assert attributes["access_token"] == "[redacted]"
    assert attributes["authorization"] == "[redacted]"
    assert attributes["next_page_token"] == "[redacted]"


def test_telemetry_client_compacts_values() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(
        "http.request.error",
        path="  /export/batch \n ",
        detail="x" * 200,
        payload={"nested": True},
        should_stop=False,
        missing=None,
    )

    _, attributes = sink.events[0]
    assert attributes["path"] == "/export/batch"
    assert attributes["detail"] == "x" * 160 + "..."
    assert attributes["payload"] == "dict"
    assert attributes["should_stop"] is False
    assert attributes["missing"] is None


def test_disabled_telemetry_client_does_not_emit() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=False, sink=sink)

    client.emit("export.batch.finish", request_id="req_1")
    assert sink.events == []


def test_build_telemetry_client_selects_sink() -> None:
    assert build_telemetry_client(enabled=True, sink="none").enabled is False
    assert build_telemetry_client(enabled=False, sink="log").enabled is False

    client = build_telemetry_client(enabled=True, sink="log")
    assert client.enabled is True
    assert isinstance(client.sink, StructuredLogTelemetrySink)


def test_user_id_is_pseudonymized() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit("auto_resume.user.finish", user_id="alice@example.com")
    client.emit("auto_resume.user.finish", user_id="alice@example.com")

    first = sink.events[0][1]["user_id"]
    assert first == pseudonymize("alice@example.com")
    assert first != "alice@example.com"
    assert len(first) == 12
    assert sink.events[1][1]["user_id"] == first


def test_span_emits_start_and_finish_with_results() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    with client.span("export.batch", source_id="PL1") as out:
        out["videos_imported"] = 4

    assert [name for name, _ in sink.events] == ["export.batch.start", "export.batch.finish"]
    finish = sink.events[1][1]
    assert finish["source_id"] == "PL1"
    assert finish["videos_imported"] == 4
    assert isinstance(finish["duration_ms"], int)


def test_span_emits_error_and_reraises() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    with pytest.raises(RuntimeError, match="boom"):
        with client.span("scheduler.tick", tick_id="t1"):
            raise RuntimeError("boom")

    assert [name for name, _ in sink.events] == ["scheduler.tick.start", "scheduler.tick.error"]
    assert sink.events[1][1]["error_type"] == "RuntimeError"
    assert sink.events[1][1]["tick_id"] == "t1"

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog

TELEMETRY_LOGGER_NAME = "ytpm.telemetry"
REDACTED = "[redacted]"

# Substrings of attribute names whose values never leave the process.
_REDACTED_KEY_PARTS: tuple[str, ...] = (
    "access_token",
    "authorization",
    "cookie",
    "credential",
    "page_token",
    "password",
    "secret",
)
# Attributes kept but replaced with a stable digest so events stay joinable.
_PSEUDONYMIZED_KEYS: frozenset[str] = frozenset({"user_id"})
_MAX_TEXT_LENGTH = 160

AttributeValue = bool | int | float | str | None


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        del event_name, attributes


class StructuredLogTelemetrySink:
    """Writes events to the `ytpm.telemetry` logger, which logging_config
    routes to its own JSON file."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger(TELEMETRY_LOGGER_NAME)

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info(event_name, telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if self.enabled:
            self.sink.emit(event_name=event_name, attributes=scrub_attributes(attributes))

    @contextmanager
    def span(self, prefix: str, **attributes: Any) -> Iterator[dict[str, Any]]:
        """Emit `<prefix>.start`, then `<prefix>.finish` or `<prefix>.error`.

        The yielded dict collects result attributes for the finish event.
        Exceptions are re-raised after the error event.
        """
        result: dict[str, Any] = {}
        started_at = time.perf_counter()
        self.emit(f"{prefix}.start", **attributes)
        try:
            yield result
        except Exception as exc:
            self.emit(
                f"{prefix}.error",
                **attributes,
                duration_ms=_elapsed_ms(started_at),
                error_type=type(exc).__name__,
            )
            raise
        self.emit(
            f"{prefix}.finish",
            **{**attributes, **result, "duration_ms": _elapsed_ms(started_at)},
        )


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if enabled and sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())
    if enabled and sink != "none":
        logging.getLogger(TELEMETRY_LOGGER_NAME).warning(
            "unknown telemetry sink=%s; telemetry disabled",
            sink,
        )
    return TelemetryClient.disabled()


def scrub_attributes(attributes: Mapping[str, Any]) -> dict[str, AttributeValue]:
    scrubbed: dict[str, AttributeValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if any(part in key for part in _REDACTED_KEY_PARTS):
            scrubbed[key] = REDACTED
        elif key in _PSEUDONYMIZED_KEYS and raw_value is not None:
            scrubbed[key] = pseudonymize(str(raw_value))
        else:
            scrubbed[key] = _scalar(raw_value)
    return scrubbed


def pseudonymize(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _scalar(value: Any) -> AttributeValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if not isinstance(value, str):
        return type(value).__name__
    text = " ".join(value.split())
    if len(text) > _MAX_TEXT_LENGTH:
        return text[:_MAX_TEXT_LENGTH] + "..."
    return text


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)

"""Progress events for long-running analyses.

The pipeline emits `ProgressEvent`s to a `ProgressBus`; any number of
observers (job-row recorder, log mirror, CLI progress line) subscribe
independently. Rendering keeps the CLI output:
- Single-line and TTY-friendly (updates in-place)
- Low-noise (rate-limited renders)
"""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

STAGE_FETCHING = "fetching"
STAGE_RATE_LIMITED = "rate_limited"
STAGE_PRICING = "pricing"
STAGE_MATCHING = "matching"
STAGE_AGGREGATING = "aggregating"
STAGE_DONE = "done"


@dataclass(frozen=True)
class ProgressEvent:
    """One progress update from a running analysis."""

    stage: str
    message: str
    percent: int
    retry_after_seconds: float | None = None


class ProgressObserver(Protocol):
    async def on_progress(self, event: ProgressEvent) -> None: ...


class ProgressBus:
    """Fan-out of progress events to subscribed observers.

    An observer that raises is logged and skipped; it never interrupts the
    analysis that emitted the event.
    """

    def __init__(self, *observers: ProgressObserver) -> None:
        self._observers: list[ProgressObserver] = list(observers)

    def subscribe(self, observer: ProgressObserver) -> None:
        self._observers.append(observer)

    async def emit(
        self,
        stage: str,
        message: str,
        percent: int,
        *,
        retry_after_seconds: float | None = None,
    ) -> None:
        event = ProgressEvent(
            stage=stage,
            message=message,
            percent=max(0, min(100, percent)),
            retry_after_seconds=retry_after_seconds,
        )
        for observer in self._observers:
            try:
                await observer.on_progress(event)
            except Exception as e:
                logger.warning("Progress observer %r failed: %s", observer, e)


class LoggingProgressObserver:
    """Mirrors progress events into the log."""

    def __init__(self, label: str) -> None:
        self._label = label

    async def on_progress(self, event: ProgressEvent) -> None:
        if event.stage == STAGE_RATE_LIMITED:
            logger.warning("[%s] %s", self._label, event.message)
        else:
            logger.info("[%s] %3d%% %s", self._label, event.percent, event.message)


def _bar(fraction: float, width: int = 22) -> str:
    fraction = max(0.0, min(1.0, fraction))
    filled = int(round(fraction * width))
    return "[" + ("#" * filled) + ("-" * (width - filled)) + "]"


def _format_elapsed(seconds: float) -> str:
    s = int(seconds)
    m, s = divmod(s, 60)
    return f"{m:d}:{s:02d}"


@dataclass
class ProgressLine:
    """In-place stderr progress line for the `analyze` command."""

    enabled: bool
    min_interval_s: float = 0.20

    def __post_init__(self) -> None:
        self._start = time.monotonic()
        self._last_render = 0.0
        self._last_line_len = 0

    async def on_progress(self, event: ProgressEvent) -> None:
        self.update(stage=event.stage, percent=event.percent, message=event.message)

    def update(self, *, stage: str, percent: int, message: str) -> None:
        if not self.enabled:
            return
        now = time.monotonic()
        # Rate-limit notices always render.
        if (now - self._last_render) < self.min_interval_s and stage != STAGE_RATE_LIMITED:
            return
        self._last_render = now

        line = (
            f"{stage:<12} {_bar(percent / 100)} {percent:3d}% "
            f"{_format_elapsed(now - self._start)} {message}"
        )
        # Clear previous line if it was longer.
        pad = " " * max(0, self._last_line_len - len(line))
        self._last_line_len = len(line)
        sys.stderr.write("\r" + line + pad)
        sys.stderr.flush()

    def close(self, *, final_line: str | None = None) -> None:
        if not self.enabled:
            return
        if final_line is not None:
            pad = " " * max(0, self._last_line_len - len(final_line))
            sys.stderr.write("\r" + final_line + pad + "\n")
        else:
            sys.stderr.write("\n")
        sys.stderr.flush()


def default_progress_enabled() -> bool:
    return bool(getattr(sys.stderr, "isatty", lambda: False)())

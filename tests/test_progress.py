"""Tests for progress fan-out and rendering."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from paperhands_tracker.progress import STAGE_FETCHING, STAGE_RATE_LIMITED, ProgressBus, ProgressLine


class TestProgressBus:
    """Tests for ProgressBus."""

    async def test_fans_out_to_every_observer(self) -> None:
        first, second = MagicMock(), MagicMock()
        first.on_progress = AsyncMock()
        second.on_progress = AsyncMock()
        bus = ProgressBus(first)
        bus.subscribe(second)

        await bus.emit(STAGE_FETCHING, "Fetching history", 10)

        event = first.on_progress.await_args.args[0]
        assert event.stage == STAGE_FETCHING
        assert event.percent == 10
        second.on_progress.assert_awaited_once_with(event)

    @pytest.mark.parametrize(("given", "expected"), [(-5, 0), (0, 0), (57, 57), (140, 100)])
    async def test_percent_is_clamped(self, given: int, expected: int) -> None:
        observer = MagicMock()
        observer.on_progress = AsyncMock()

        await ProgressBus(observer).emit(STAGE_FETCHING, "x", given)

        assert observer.on_progress.await_args.args[0].percent == expected

    async def test_failing_observer_is_skipped(self) -> None:
        broken, healthy = MagicMock(), MagicMock()
        broken.on_progress = AsyncMock(side_effect=RuntimeError("store down"))
        healthy.on_progress = AsyncMock()

        await ProgressBus(broken, healthy).emit(STAGE_RATE_LIMITED, "Rate limited", 20, retry_after_seconds=1.5)

        healthy.on_progress.assert_awaited_once()
        assert healthy.on_progress.await_args.args[0].retry_after_seconds == 1.5


class TestProgressLine:
    """Tests for the CLI progress line."""

    def test_disabled_writes_nothing(self, capsys: pytest.CaptureFixture[str]) -> None:
        line = ProgressLine(enabled=False)

        line.update(stage=STAGE_FETCHING, percent=50, message="page 3")
        line.close(final_line="done")

        assert capsys.readouterr().err == ""

    def test_renders_stage_and_final_line(self, capsys: pytest.CaptureFixture[str]) -> None:
        line = ProgressLine(enabled=True, min_interval_s=0.0)

        line.update(stage=STAGE_FETCHING, percent=50, message="page 3")
        line.close(final_line="done: 2 regret events")

        err = capsys.readouterr().err
        assert "fetching" in err
        assert " 50%" in err
        assert err.endswith("\n")
        assert err.rstrip().endswith("done: 2 regret events")

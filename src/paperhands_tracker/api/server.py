"""HTTP API for submitting and polling wallet analyses."""

from __future__ import annotations

import logging
from typing import Any

from aiohttp import web

from paperhands_tracker.ingestor.address import InvalidAddressError
from paperhands_tracker.scheduler.queue import (
    EnqueueOutcome,
    InternalSchedulingFailure,
    JobStatus,
    RateLimitedError,
)
from paperhands_tracker.scheduler.runner import JobRunner
from paperhands_tracker.storage.repos import WalletAnalysisDTO

logger = logging.getLogger(__name__)

RUNNER_KEY = web.AppKey("runner", JobRunner)

DEFAULT_LOOKBACK_DAYS = 30
MAX_LOOKBACK_DAYS = 365
DEFAULT_LEADERBOARD_LIMIT = 50


def _error(message: str, *, status: int, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


def outcome_payload(outcome: EnqueueOutcome) -> dict[str, Any]:
    payload: dict[str, Any] = {"jobId": outcome.job_id, "status": outcome.status}
    if outcome.queue_position is not None:
        payload["queuePosition"] = outcome.queue_position
    if outcome.result is not None:
        payload["result"] = outcome.result.to_dict()
    return payload


def status_payload(status: JobStatus) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "jobId": status.job_id,
        "walletAddress": status.wallet_address,
        "status": status.status,
        "progress": {"percent": status.progress_percent, "message": status.progress_message},
        "createdAt": status.created_at.isoformat(),
    }
    if status.queue_position is not None:
        payload["queuePosition"] = status.queue_position
    if status.result is not None:
        payload["result"] = status.result.to_dict()
    if status.error is not None:
        payload["error"] = status.error
    if status.started_at is not None:
        payload["startedAt"] = status.started_at.isoformat()
    if status.completed_at is not None:
        payload["completedAt"] = status.completed_at.isoformat()
    return payload


def leaderboard_row(row: WalletAnalysisDTO) -> dict[str, Any]:
    return {
        "walletAddress": row.wallet_address,
        "totalRegret": row.total_regret,
        "totalEvents": row.total_events,
        "distinctTokensTraded": row.distinct_tokens_traded,
        "winRate": row.win_rate,
        "avgHoldDays": row.avg_hold_days,
        "paperhandsScore": row.paperhands_score,
        "computedAt": row.computed_at.isoformat(),
        "expiresAt": row.expires_at.isoformat(),
    }


class ApiHandlers:
    """Request handlers bound to one job runner."""

    def __init__(
        self,
        runner: JobRunner,
        *,
        default_lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        max_lookback_days: int = MAX_LOOKBACK_DAYS,
        leaderboard_limit: int = DEFAULT_LEADERBOARD_LIMIT,
    ) -> None:
        self._runner = runner
        self._default_lookback_days = default_lookback_days
        self._max_lookback_days = max_lookback_days
        self._leaderboard_limit = leaderboard_limit

    async def enqueue_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return _error("invalid json body", status=400)
        if not isinstance(payload, dict):
            return _error("invalid json body", status=400)

        address = payload.get("walletAddress")
        if not isinstance(address, str) or not address.strip():
            return _error("walletAddress is required", status=400)

        days_raw = payload.get("daysBack", self._default_lookback_days)
        try:
            days = int(days_raw)
        except (TypeError, ValueError):
            return _error("daysBack must be an integer", status=400)
        if not 1 <= days <= self._max_lookback_days:
            return _error(f"daysBack must be between 1 and {self._max_lookback_days}", status=400)

        try:
            outcome = await self._runner.submit(address, days)
        except InvalidAddressError as e:
            return _error(str(e), status=400)
        except RateLimitedError as e:
            return web.json_response(
                {
                    "jobId": None,
                    "status": "rate_limited",
                    "retryAfterSeconds": e.retry_after_seconds,
                    "error": str(e),
                },
                status=429,
                headers={"Retry-After": str(e.retry_after_seconds)},
            )
        except InternalSchedulingFailure as e:
            logger.error("Failed to admit analysis for %s: %s", address, e)
            return _error("job store unavailable, please retry", status=503)
        return web.json_response(outcome_payload(outcome))

    async def status_handler(self, request: web.Request) -> web.Response:
        job_id = request.query.get("jobId", "").strip()
        if not job_id:
            return _error("jobId is required", status=400)
        try:
            status = await self._runner.queue.status(job_id)
        except InternalSchedulingFailure as e:
            logger.error("Status lookup failed for %s: %s", job_id, e)
            return _error("job store unavailable, please retry", status=503)
        if status is None:
            return _error("job not found", status=404)
        return web.json_response(status_payload(status))

    async def metrics_handler(self, request: web.Request) -> web.Response:
        try:
            metrics = await self._runner.queue.metrics()
        except InternalSchedulingFailure as e:
            logger.error("Queue metrics lookup failed: %s", e)
            return _error("job store unavailable, please retry", status=503)
        return web.json_response(
            {
                "maxConcurrent": metrics.max_concurrent,
                "currentlyProcessing": metrics.currently_processing,
                "queuedCount": metrics.queued_count,
                "availableSlots": metrics.available_slots,
            }
        )

    async def leaderboard_handler(self, request: web.Request) -> web.Response:
        try:
            limit = int(request.query.get("limit", self._leaderboard_limit))
        except ValueError:
            return _error("limit must be an integer", status=400)
        limit = max(1, min(limit, self._leaderboard_limit))
        rows = await self._runner.queue.top_analyses(limit=limit)
        return web.json_response({"count": len(rows), "items": [leaderboard_row(r) for r in rows]})

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "activeJobs": self._runner.active_jobs})


def create_app(
    runner: JobRunner,
    *,
    default_lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    max_lookback_days: int = MAX_LOOKBACK_DAYS,
    leaderboard_limit: int = DEFAULT_LEADERBOARD_LIMIT,
) -> web.Application:
    handlers = ApiHandlers(
        runner,
        default_lookback_days=default_lookback_days,
        max_lookback_days=max_lookback_days,
        leaderboard_limit=leaderboard_limit,
    )
    app = web.Application()
    app[RUNNER_KEY] = runner
    app.router.add_post("/api/scan/queue", handlers.enqueue_handler)
    app.router.add_get("/api/scan/queue", handlers.metrics_handler)
    app.router.add_get("/api/scan/status", handlers.status_handler)
    app.router.add_get("/api/wallet-analyses", handlers.leaderboard_handler)
    app.router.add_get("/health", handlers.health_handler)
    return app


async def start_site(app: web.Application, *, host: str, port: int) -> web.AppRunner:
    """Bind the app and start serving; the caller cleans up the returned runner."""
    app_runner = web.AppRunner(app)
    await app_runner.setup()
    site = web.TCPSite(app_runner, host=host, port=port)
    await site.start()
    logger.info("HTTP API listening on http://%s:%d", host, port)
    return app_runner

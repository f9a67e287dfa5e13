#!/usr/bin/env python3
"""
Interval scheduler for the feed pipeline.

Fires ``PipelineRunner.trigger("scheduler")`` every PIPELINE_INTERVAL_MINUTES
and, optionally, once shortly after start-up. The scheduler keeps no lock of
its own: when the runner reports a run in progress the tick is logged and
dropped, so overlapping ticks never queue up.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from config import config, get_logger
from telemetry import get_tracer, init_telemetry, trace_span

# Module-specific logger
logger = get_logger("scheduler")

# Initialize telemetry for the scheduler subsystem
init_telemetry("feed-commentary-scheduler")
_tracer = get_tracer("scheduler")


class PipelineScheduler:
    """Periodic trigger for a PipelineRunner."""

    def __init__(self, runner, interval_minutes: Optional[float] = None, run_on_start: Optional[bool] = None,
                 warmup_seconds: Optional[float] = None):
        """Initialize scheduler.

        Args:
            runner: PipelineRunner (anything with ``trigger(reason) -> bool``)
            interval_minutes: Minutes between ticks (default: PIPELINE_INTERVAL_MINUTES)
            run_on_start: Fire one warm-up tick after start (default: SCHEDULER_RUN_IMMEDIATELY)
            warmup_seconds: Delay before the warm-up tick (default: SCHEDULER_WARMUP_SECONDS)
        """
        self.runner = runner
        self.interval_minutes = float(config.PIPELINE_INTERVAL_MINUTES if interval_minutes is None else interval_minutes)
        if self.interval_minutes <= 0:
            raise ValueError(f"interval_minutes must be positive, got {interval_minutes}")
        self.run_on_start = config.SCHEDULER_RUN_IMMEDIATELY if run_on_start is None else bool(run_on_start)
        self.warmup_seconds = float(config.SCHEDULER_WARMUP_SECONDS if warmup_seconds is None else warmup_seconds)
        self.next_tick_at: Optional[datetime] = None
        self.last_tick_at: Optional[datetime] = None
        self.last_tick_reason: Optional[str] = None
        self.last_tick_accepted: Optional[bool] = None
        self.ticks = 0
        self.skipped = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the scheduling loop on the running event loop."""
        if self.active:
            return
        logger.info(
            f"🕐 Scheduler started: every {self.interval_minutes:g} minutes"
            f"{f', warm-up run in {self.warmup_seconds:g}s' if self.run_on_start else ''}"
        )
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        self.next_tick_at = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Scheduler stopped")

    @trace_span(
        "scheduler.tick",
        tracer_name="scheduler",
        attr_from_args=lambda self, reason="scheduler": {"tick.reason": reason},
    )
    def tick(self, reason: str = "scheduler") -> bool:
        """Ask the runner for a run; a busy runner means this tick is skipped."""
        self.ticks += 1
        self.last_tick_at = datetime.now(timezone.utc)
        self.last_tick_reason = reason
        accepted = self.runner.trigger(reason)
        self.last_tick_accepted = accepted
        if accepted:
            logger.info(f"⏰ Scheduled pipeline run started ({reason})")
        else:
            self.skipped += 1
            logger.info(f"⏭️ Pipeline already running; skipping {reason} tick")
        return accepted

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, seconds: {"sleep.seconds": float(seconds)},
    )
    async def _sleep(self, seconds: float) -> None:
        self.next_tick_at = datetime.now(timezone.utc) + timedelta(seconds=seconds)
        await asyncio.sleep(seconds)

    async def _loop(self) -> None:
        if self.run_on_start:
            await self._sleep(self.warmup_seconds)
            self._safe_tick("startup")
        while True:
            logger.info(f"😴 Sleeping {self.interval_minutes:g} minutes until next pipeline run")
            await self._sleep(self.interval_seconds)
            self._safe_tick("scheduler")

    def _safe_tick(self, reason: str) -> None:
        try:
            self.tick(reason)
        except Exception as e:
            # Keep the loop alive; the next tick tries again
            logger.error(f"💥 Error in scheduled tick: {type(e).__name__}: {e}")

    def status(self) -> Dict[str, Any]:
        """Get current schedule status information."""
        now = datetime.now(timezone.utc)
        seconds_until = (self.next_tick_at - now).total_seconds() if self.next_tick_at else None
        return {
            'active': self.active,
            'interval_minutes': self.interval_minutes,
            'run_on_start': self.run_on_start,
            'next_tick_at': self.next_tick_at.isoformat() if self.next_tick_at else None,
            'seconds_until_next_tick': round(max(0.0, seconds_until), 1) if seconds_until is not None else None,
            'last_tick_at': self.last_tick_at.isoformat() if self.last_tick_at else None,
            'last_tick_reason': self.last_tick_reason,
            'last_tick_accepted': self.last_tick_accepted,
            'ticks': self.ticks,
            'skipped': self.skipped,
        }

import asyncio

import pytest

from pipeline import PipelineRunner, stage_outcome
from scheduler import PipelineScheduler


class FakeRunner:
    def __init__(self, accept=True, error=None):
        self.accept = accept
        self.error = error
        self.reasons = []

    def trigger(self, reason):
        self.reasons.append(reason)
        if self.error is not None:
            raise self.error
        return self.accept


class GatedStage:
    def __init__(self, step, gate):
        self.step = step
        self.gate = gate
        self.alive = False
        self.pid = None

    async def run(self):
        await self.gate.wait()
        return stage_outcome(self.step, True, exit_code=0)


def test_tick_counts_accepted_and_skipped():
    runner = FakeRunner(accept=True)
    scheduler = PipelineScheduler(runner, interval_minutes=30, run_on_start=False)

    assert scheduler.tick() is True
    runner.accept = False
    assert scheduler.tick() is False

    status = scheduler.status()
    assert status['ticks'] == 2
    assert status['skipped'] == 1
    assert status['last_tick_accepted'] is False
    assert status['last_tick_reason'] == "scheduler"
    assert runner.reasons == ["scheduler", "scheduler"]


@pytest.mark.asyncio
async def test_loop_fires_warmup_then_interval_ticks():
    runner = FakeRunner()
    scheduler = PipelineScheduler(runner, interval_minutes=0.0005, run_on_start=True, warmup_seconds=0)

    scheduler.start()
    assert scheduler.active
    await asyncio.sleep(0.3)
    await scheduler.stop()

    assert runner.reasons[0] == "startup"
    assert "scheduler" in runner.reasons[1:]
    assert not scheduler.active
    assert scheduler.status()['next_tick_at'] is None


@pytest.mark.asyncio
async def test_no_warmup_waits_for_first_interval():
    runner = FakeRunner()
    scheduler = PipelineScheduler(runner, interval_minutes=30, run_on_start=False)

    scheduler.start()
    await asyncio.sleep(0.05)
    status = scheduler.status()
    await scheduler.stop()

    assert runner.reasons == []
    assert status['active'] is True
    assert status['seconds_until_next_tick'] > 1700


@pytest.mark.asyncio
async def test_errors_in_a_tick_do_not_stop_the_loop():
    runner = FakeRunner(error=RuntimeError("runner exploded"))
    scheduler = PipelineScheduler(runner, interval_minutes=0.0005, run_on_start=True, warmup_seconds=0)

    scheduler.start()
    await asyncio.sleep(0.2)
    still_running = scheduler.active
    await scheduler.stop()

    assert still_running
    assert len(runner.reasons) >= 2


@pytest.mark.asyncio
async def test_scheduler_shares_the_runner_lock():
    gate = asyncio.Event()
    runner = PipelineRunner(stages={
        'ingest': lambda: GatedStage('ingest', gate),
        'summarize': lambda: GatedStage('summarize', gate),
    })
    scheduler = PipelineScheduler(runner, run_on_start=False)

    assert runner.trigger("admin")
    assert scheduler.tick() is False
    assert scheduler.status()['skipped'] == 1

    gate.set()
    await runner.wait()
    assert scheduler.tick() is True
    await runner.wait()


@pytest.mark.asyncio
async def test_stop_without_start():
    scheduler = PipelineScheduler(FakeRunner(), run_on_start=False)
    await scheduler.stop()
    assert not scheduler.active


@pytest.mark.parametrize("interval", [0, -1])
def test_non_positive_interval_is_rejected(interval):
    with pytest.raises(ValueError):
        PipelineScheduler(FakeRunner(), interval_minutes=interval, run_on_start=False)

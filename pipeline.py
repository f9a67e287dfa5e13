#!/usr/bin/env python3
"""
Pipeline runner: ingest followed by summarize, one run at a time.

Each stage is a bounded unit of work. By default stages run as child
processes (``python main.py ingest`` / ``python main.py summarize``) so that
a hung feed or API call cannot stall the serving process; a child that
outlives its deadline is killed outright. ``InProcessStage`` offers the same
contract for a coroutine, cancelling it on timeout.

Run bookkeeping lives in a single ``PipelineState`` owned by the runner. The
scheduler and the admin endpoints both go through the runner, so there is
exactly one lock. ``reset()`` clears that bookkeeping without touching an
in-flight stage; the stage keeps running and a later run may overlap it.
"""

import sys
import time
from asyncio import (
    CancelledError,
    Task,
    TimeoutError,
    create_subprocess_exec,
    create_task,
    subprocess as aio_subprocess,
    wait_for,
)
from itertools import count
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from config import config, get_logger
from errors import PipelineBusyError
from telemetry import get_tracer, init_telemetry, trace_span
from utils import format_duration, iso_timestamp, now_ts, tail_text

# Module-specific logger
logger = get_logger("pipeline")
init_telemetry("feed-commentary-pipeline")
_tracer = get_tracer("pipeline")

MAIN_SCRIPT = Path(__file__).resolve().parent / "main.py"
STAGE_NAMES = ("ingest", "summarize")
# Grace period for draining a killed child's output pipe
KILL_DRAIN_SECONDS = 5


def stage_timeout(timeout: Optional[float]) -> float:
    value = float(config.PIPELINE_STAGE_TIMEOUT_SECONDS if timeout is None else timeout)
    if value <= 0:
        raise ValueError(f"stage timeout must be positive, got {timeout}")
    return value


def stage_outcome(step: str, ok: bool, exit_code: Optional[int] = None, timed_out: bool = False,
                  duration: float = 0.0, output: str = "", error: Optional[str] = None) -> Dict[str, Any]:
    return {
        'step': step,
        'ok': ok,
        'exit_code': exit_code,
        'timed_out': timed_out,
        'duration': round(duration, 3),
        'output': output,
        'error': error,
    }


def _timeout_marker(step: str, timeout: float) -> str:
    return f"[timeout] stage '{step}' exceeded {timeout:g}s and was terminated"


class SubprocessStage:
    """Run one stage as a child process, killing it when the deadline passes."""

    def __init__(self, step: str, argv: Sequence[str], timeout: Optional[float] = None,
                 cwd: Optional[str] = None, tail_chars: Optional[int] = None):
        self.step = step
        self.argv = list(argv)
        self.timeout = stage_timeout(timeout)
        self.cwd = cwd
        self.tail_chars = config.PIPELINE_OUTPUT_TAIL_CHARS if tail_chars is None else max(1, int(tail_chars))
        self.process = None

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    async def _drain(self, stream, chunks: List[bytes]) -> None:
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            chunks.append(chunk)

    @trace_span(
        "stage.subprocess",
        tracer_name="pipeline",
        attr_from_args=lambda self: {"stage.step": self.step, "stage.timeout": self.timeout},
    )
    async def run(self) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            self.process = await create_subprocess_exec(
                *self.argv,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.STDOUT,
                cwd=self.cwd,
            )
        except OSError as e:
            logger.error(f"Could not start stage {self.step}: {e}")
            return stage_outcome(self.step, False, duration=time.monotonic() - started,
                                 error=f"spawn failed: {e}")

        chunks: List[bytes] = []
        reader = create_task(self._drain(self.process.stdout, chunks))
        timed_out = False
        try:
            await wait_for(self.process.wait(), timeout=self.timeout)
        except TimeoutError:
            timed_out = True
            logger.error(f"Stage {self.step} (pid {self.process.pid}) timed out after {self.timeout:g}s; killing")
            self.process.kill()
            await self.process.wait()
        except CancelledError:
            self.process.kill()
            await self.process.wait()
            reader.cancel()
            raise

        try:
            await wait_for(reader, timeout=KILL_DRAIN_SECONDS)
        except TimeoutError:
            logger.warning(f"Output of stage {self.step} did not close after exit; truncating")

        output = b"".join(chunks).decode("utf-8", errors="replace")
        if timed_out:
            output = f"{output.rstrip()}\n{_timeout_marker(self.step, self.timeout)}".lstrip()
        exit_code = self.process.returncode
        ok = not timed_out and exit_code == 0
        error = None
        if timed_out:
            error = f"timeout after {self.timeout:g}s"
        elif exit_code != 0:
            error = f"exit code {exit_code}"
        return stage_outcome(
            self.step, ok,
            exit_code=exit_code,
            timed_out=timed_out,
            duration=time.monotonic() - started,
            output=tail_text(output, self.tail_chars),
            error=error,
        )


class InProcessStage:
    """Run one stage as a coroutine in this process, cancelling it on timeout."""

    def __init__(self, step: str, func: Callable[[], Awaitable[Any]], timeout: Optional[float] = None):
        self.step = step
        self.func = func
        self.timeout = stage_timeout(timeout)
        self._task: Optional[Task] = None

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pid(self) -> Optional[int]:
        return None

    @trace_span(
        "stage.in_process",
        tracer_name="pipeline",
        attr_from_args=lambda self: {"stage.step": self.step, "stage.timeout": self.timeout},
    )
    async def run(self) -> Dict[str, Any]:
        started = time.monotonic()
        self._task = create_task(self.func())
        try:
            result = await wait_for(self._task, timeout=self.timeout)
        except TimeoutError:
            logger.error(f"Stage {self.step} timed out after {self.timeout:g}s; cancelled")
            return stage_outcome(self.step, False, timed_out=True, duration=time.monotonic() - started,
                                 output=_timeout_marker(self.step, self.timeout),
                                 error=f"timeout after {self.timeout:g}s")
        except CancelledError:
            raise
        except Exception as e:
            logger.error(f"Stage {self.step} failed: {type(e).__name__}: {e}")
            return stage_outcome(self.step, False, exit_code=1, duration=time.monotonic() - started,
                                 error=f"{type(e).__name__}: {e}")
        return stage_outcome(self.step, True, exit_code=0, duration=time.monotonic() - started,
                             output=f"{self.step} result: {result}")


StageFactory = Callable[[], Any]


def subprocess_stage_factories(timeout: Optional[float] = None) -> Dict[str, StageFactory]:
    """Stage factories that re-enter ``main.py`` as child processes."""
    def factory(step: str) -> StageFactory:
        return lambda: SubprocessStage(step, [sys.executable, str(MAIN_SCRIPT), step],
                                       timeout=timeout, cwd=str(MAIN_SCRIPT.parent))
    return {step: factory(step) for step in STAGE_NAMES}


def in_process_stage_factories(timeout: Optional[float] = None) -> Dict[str, StageFactory]:
    """Stage factories that run the stage entry points inside this process."""
    # Deferred so the server process does not import the stage modules
    from fetcher import main_async_single_run as ingest_once
    from summarizer import main_async_single_run as summarize_once

    return {
        'ingest': lambda: InProcessStage('ingest', ingest_once, timeout=timeout),
        'summarize': lambda: InProcessStage('summarize', summarize_once, timeout=timeout),
    }


class PipelineState:
    """Single owner of run bookkeeping.

    ``try_acquire`` hands out a token; only ``release`` with the current
    token records a result, so a run that finishes after a forced reset
    cannot overwrite the state of the run that replaced it.
    """

    def __init__(self):
        self.running = False
        self.started_at: Optional[int] = None
        self.reason: Optional[str] = None
        self.last_run_at: Optional[int] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self._token: Optional[int] = None
        self._tokens = count(1)

    @property
    def token(self) -> Optional[int]:
        return self._token

    def try_acquire(self, reason: str) -> Optional[int]:
        """Mark a run as started; None when one is already running."""
        if self.running:
            return None
        self.running = True
        self.started_at = now_ts()
        self.reason = reason
        self._token = next(self._tokens)
        return self._token

    def release(self, token: int, result: Dict[str, Any]) -> bool:
        """Finish the run identified by ``token``; False when the token is stale."""
        if token != self._token:
            logger.warning(f"Ignoring result of superseded run {token} (current run: {self._token})")
            return False
        self.running = False
        self.started_at = None
        self.reason = None
        self._token = None
        self.last_run_at = now_ts()
        self.last_result = result
        return True

    def force_release(self) -> Dict[str, Any]:
        """Clear the running flag unconditionally and return the prior snapshot."""
        previous = self.snapshot()
        self.running = False
        self.started_at = None
        self.reason = None
        self._token = None
        return previous

    def snapshot(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'started_at': iso_timestamp(self.started_at),
            'reason': self.reason,
            'last_run_at': iso_timestamp(self.last_run_at),
            'last_result': self.last_result,
        }


class PipelineRunner:
    """Sequences ingest then summarize under the pipeline lock."""

    def __init__(self, stages: Optional[Dict[str, StageFactory]] = None, state: Optional[PipelineState] = None):
        self.stages = stages or subprocess_stage_factories()
        missing = [step for step in STAGE_NAMES if step not in self.stages]
        if missing:
            raise ValueError(f"Missing pipeline stages: {', '.join(missing)}")
        self.state = state or PipelineState()
        # Stage currently executing for each run token (a reset run may still be here)
        self._in_flight: Dict[int, Any] = {}
        self._task: Optional[Task] = None

    @property
    def running(self) -> bool:
        return self.state.running

    def trigger(self, reason: str = "manual") -> bool:
        """Start a run in the background. False when a run is already in progress."""
        token = self.state.try_acquire(reason)
        if token is None:
            logger.info(f"Pipeline trigger ({reason}) rejected: already running since {iso_timestamp(self.state.started_at)}")
            return False
        self._task = create_task(self._execute(token, reason))
        return True

    async def run(self, reason: str = "manual") -> Dict[str, Any]:
        """Run the pipeline and wait for the result.

        Raises:
            PipelineBusyError: a run is already in progress
        """
        token = self.state.try_acquire(reason)
        if token is None:
            raise PipelineBusyError(started_at=iso_timestamp(self.state.started_at))
        return await self._execute(token, reason)

    async def wait(self) -> Optional[Dict[str, Any]]:
        """Wait for the background run started by ``trigger`` (if any)."""
        if self._task is None:
            return None
        return await self._task

    async def cancel(self) -> None:
        """Cancel a background run (its stage process is killed) and wait for it."""
        task = self._task
        if task is None or task.done():
            return
        logger.warning("Cancelling in-flight pipeline run")
        task.cancel()
        try:
            await task
        except CancelledError:
            pass

    @trace_span(
        "pipeline.run",
        tracer_name="pipeline",
        attr_from_args=lambda self, token, reason: {"pipeline.reason": reason, "pipeline.token": token},
    )
    async def _execute(self, token: int, reason: str) -> Dict[str, Any]:
        started_at = now_ts()
        started = time.monotonic()
        logger.info(f"🚀 Starting pipeline run ({reason})")
        result: Dict[str, Any] = {
            'ok': False,
            'reason': reason,
            'step': None,
            'stages': {},
            'started_at': iso_timestamp(started_at),
            'finished_at': None,
        }
        try:
            for step in STAGE_NAMES:
                outcome = await self._run_stage(token, step)
                result['stages'][step] = outcome
                if not outcome['ok']:
                    result['step'] = step
                    kind = "timed out" if outcome['timed_out'] else "failed"
                    logger.error(f"💀 Stage {step} {kind} ({outcome['error']}); stopping pipeline")
                    break
            else:
                result['ok'] = True
        except CancelledError:
            result['step'] = result['step'] or self._step_of(token)
            result['error'] = "cancelled"
            raise
        except Exception as e:
            # Unexpected runner error; the state is still released below
            result['step'] = self._step_of(token)
            result['error'] = f"{type(e).__name__}: {e}"
            logger.error(f"💥 Pipeline run crashed in {result['step']}: {result['error']}")
        finally:
            self._in_flight.pop(token, None)
            result['finished_at'] = iso_timestamp(now_ts())
            self.state.release(token, result)

        elapsed = format_duration(time.monotonic() - started)
        if result['ok']:
            logger.info(f"🎉 Pipeline run ({reason}) completed in {elapsed}")
        else:
            logger.error(f"❌ Pipeline run ({reason}) failed at {result['step']} after {elapsed}")
        return result

    def _step_of(self, token: Optional[int]) -> Optional[str]:
        return getattr(self._in_flight.get(token), 'step', None)

    async def _run_stage(self, token: int, step: str) -> Dict[str, Any]:
        stage = self.stages[step]()
        self._in_flight[token] = stage
        logger.info(f"▶️ Running stage {step}")
        outcome = await stage.run()
        if outcome['ok']:
            logger.info(f"✅ Stage {step} finished in {format_duration(outcome['duration'])}")
        return outcome

    def status(self) -> Dict[str, Any]:
        snapshot = self.state.snapshot()
        snapshot['current_stage'] = self._step_of(self.state.token) if snapshot['running'] else None
        return snapshot

    def reset(self) -> Dict[str, Any]:
        """Force the runner back to idle without stopping an in-flight stage."""
        alive = [stage for stage in self._in_flight.values() if stage.alive]
        for stage in alive:
            logger.warning(
                f"Pipeline reset while stage {stage.step} may still be running"
                f"{f' (pid {stage.pid})' if stage.pid else ''}; a new run can overlap it"
            )
        if not alive and self.state.running:
            logger.warning("Pipeline reset while marked running")
        elif not self.state.running:
            logger.info("Pipeline reset requested while idle")
        previous = self.state.force_release()
        return {'reset': True, 'was_running': previous['running'], 'previous': previous}

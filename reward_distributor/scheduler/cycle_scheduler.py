"""
Time-grid cycle scheduler.

Each cycle is a fixed-width window aligned to the wall clock
(``window_start = floor(now / W) * W``). Stages fire at fixed offsets inside
the window. The scheduler guarantees:

- a stage fires at most once per cycle id (guarded by the cycle's fired-set)
- a late tick fires every overdue stage of the current cycle, in order
- a stage that overruns its timeout is abandoned, not awaited, and the
  next stage / cycle proceeds
"""

import time
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from reward_distributor.core.exceptions import StageTimeoutError
from reward_distributor.core.types import Cycle, SchedulerState


logger = structlog.get_logger(__name__)


class SystemClock:
    """Wall-clock time source; replaced by a fake in tests."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass
class Stage:
    """A named step fired once per cycle at ``window_start + offset``."""
    name: str
    offset: float
    handler: Callable[[Cycle], Awaitable[Any]]
    timeout: float
    state: SchedulerState
    fired: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    last_error: Optional[str] = None
    last_run: Optional[datetime] = None


class CycleScheduler:
    """
    Drives Idle -> Claiming -> Swapping -> Distributing -> Cooldown -> Idle
    on a fixed time grid.

    The loop is single-threaded and not reentrant: a stage resolves or times
    out before later offsets are evaluated.
    """

    def __init__(
        self,
        stages: List[Stage],
        cycle_width: int,
        poll_interval: float = 1.0,
        clock=None
    ):
        if cycle_width <= 0:
            raise ValueError("cycle_width must be positive")
        for stage in stages:
            if not 0 <= stage.offset < cycle_width:
                raise ValueError(f"Stage {stage.name} offset {stage.offset} outside cycle of {cycle_width}s")
        if len({stage.name for stage in stages}) != len(stages):
            raise ValueError("Stage names must be unique")

        self.stages = sorted(stages, key=lambda s: s.offset)
        self.cycle_width = cycle_width
        self.poll_interval = poll_interval
        self.clock = clock or SystemClock()

        self.state = SchedulerState.IDLE
        self.current_cycle: Optional[Cycle] = None
        self.cycles_started = 0
        self.running = False
        self.logger = logger.bind(service="cycle_scheduler")

    def _roll_cycle(self, now: float) -> Cycle:
        """Return the cycle containing ``now``, starting a new one if needed."""
        cycle = self.current_cycle
        if cycle is not None and cycle.contains(now):
            return cycle

        if cycle is not None:
            unfired = [s.name for s in self.stages if s.name not in cycle.stages_fired]
            if unfired:
                self.logger.warning("Cycle ended with stages not fired", cycle_id=cycle.id, stages=unfired)

        cycle = Cycle.for_time(now, self.cycle_width)
        self.current_cycle = cycle
        self.cycles_started += 1
        self.state = SchedulerState.IDLE
        self.logger.info(
            "🚀 New cycle",
            cycle_id=cycle.id,
            window_start=datetime.fromtimestamp(cycle.window_start, timezone.utc).isoformat(),
            window_end=datetime.fromtimestamp(cycle.window_end, timezone.utc).isoformat()
        )
        return cycle

    async def tick(self) -> List[str]:
        """
        Evaluate the grid once and fire every overdue stage.

        Returns:
            Names of the stages fired during this tick, in order
        """
        now = self.clock.now()
        cycle = self._roll_cycle(now)
        fired: List[str] = []

        for stage in self.stages:
            if stage.name in cycle.stages_fired:
                continue
            if now < cycle.window_start + stage.offset:
                break
            if fired:
                now = self.clock.now()
                if not cycle.contains(now):
                    break

            cycle.stages_fired.add(stage.name)
            fired.append(stage.name)
            await self._run_stage(stage, cycle)

        if fired and len(cycle.stages_fired) == len(self.stages):
            self.state = SchedulerState.COOLDOWN
        return fired

    async def _run_stage(self, stage: Stage, cycle: Cycle) -> None:
        self.state = stage.state
        stage.fired += 1
        stage.last_run = datetime.now(timezone.utc)
        log = self.logger.bind(stage=stage.name, cycle_id=cycle.id)
        log.info("Stage started", state=stage.state.value)

        started = time.monotonic()
        task = asyncio.ensure_future(stage.handler(cycle))
        done, _ = await asyncio.wait({task}, timeout=stage.timeout)

        if not done:
            stage.timed_out += 1
            timeout_error = StageTimeoutError(stage.name, stage.timeout)
            stage.last_error = timeout_error.message
            task.add_done_callback(_make_orphan_logger(stage.name, cycle.id))
            log.warning("⏰ Stage timed out, abandoning", timeout=stage.timeout)
            return

        if task.cancelled():
            stage.failed += 1
            stage.last_error = "cancelled"
            log.warning("Stage cancelled")
            return

        error = task.exception()
        if error is not None:
            stage.failed += 1
            stage.last_error = str(error)
            log.error(
                "❌ Stage failed",
                error=str(error),
                error_type=type(error).__name__,
                code=getattr(error, "code", None)
            )
            return

        stage.succeeded += 1
        stage.last_error = None
        log.info("Stage completed", duration=f"{time.monotonic() - started:.2f}s")

    async def run(self) -> None:
        """Tick forever until ``stop`` is called."""
        self.running = True
        self.logger.info(
            "Scheduler loop started",
            cycle_width=self.cycle_width,
            stages={s.name: s.offset for s in self.stages}
        )
        while self.running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                self.logger.info("Scheduler loop cancelled")
                raise
            except Exception as e:
                self.logger.error("Error in scheduler loop", error=str(e), error_type=type(e).__name__)
            await self.clock.sleep(self.poll_interval)
        self.logger.info("Scheduler loop stopped")

    def stop(self) -> None:
        self.running = False

    def get_status(self) -> Dict[str, Any]:
        """Get current scheduler status."""
        cycle = self.current_cycle
        return {
            "state": self.state.value,
            "running": self.running,
            "cycles_started": self.cycles_started,
            "cycle": {
                "id": cycle.id,
                "window_start": cycle.window_start,
                "window_end": cycle.window_end,
                "stages_fired": sorted(cycle.stages_fired),
            } if cycle else None,
            "stages": {
                s.name: {
                    "offset": s.offset,
                    "timeout": s.timeout,
                    "fired": s.fired,
                    "succeeded": s.succeeded,
                    "failed": s.failed,
                    "timed_out": s.timed_out,
                    "last_error": s.last_error,
                    "last_run": s.last_run.isoformat() if s.last_run else None,
                }
                for s in self.stages
            },
        }

    async def health_check(self) -> Dict[str, Any]:
        status = self.get_status()
        fired = sum(s.fired for s in self.stages)
        problems = sum(s.failed + s.timed_out for s in self.stages)
        status["healthy"] = self.running and (fired == 0 or problems < fired)
        return status


def _make_orphan_logger(stage: str, cycle_id: str) -> Callable[[asyncio.Future], None]:
    """Done-callback that reports how an abandoned stage eventually ended."""
    def _on_done(task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Abandoned stage finished with error", stage=stage, cycle_id=cycle_id, error=str(error))
        else:
            logger.info("Abandoned stage finished late, result ignored", stage=stage, cycle_id=cycle_id)
    return _on_done

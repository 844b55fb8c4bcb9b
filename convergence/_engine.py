# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import threading
import time
from collections import Counter
from datetime import datetime
from datetime import timezone
from enum import Enum
from enum import IntEnum
from typing import Callable
from typing import Optional
from typing import Sequence

from convergence._plan import Plan
from convergence._result import StepResult
from convergence._result import StepStatus
from convergence._step import ALREADY_CONVERGED
from convergence._step import execute

DEPENDENCY_UNMET = "dependency unmet"
ABORTED_BY_FATAL_FAILURE = "aborted by prior fatal failure"
CANCELLED = "cancelled"


class RunState(Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    ABORTED = 'aborted'


class AbortCause(Enum):
    FATAL_FAILURE = 'fatal_failure'
    CANCELLATION = 'cancellation'


class ExitCode(IntEnum):
    OK = 0
    COMPLETED_WITH_FAILURES = 10
    ABORTED = 20
    CANCELLED = 30
    CONFIGURATION_ERROR = 40
    HOST_BUSY = 50
    HOST_UNREACHABLE = 60


class Cancellation:
    """Request to stop a run, observed between steps only.

    Safe to request from a signal handler or another thread.
    """

    def __init__(self):
        self._event = threading.Event()

    def request(self):
        self._event.set()

    def is_requested(self) -> bool:
        return self._event.is_set()


class EngineRun:

    def __init__(self):
        self.state = RunState.PENDING
        self.abort_cause: Optional[AbortCause] = None
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self._results: list[StepResult] = []
        self._satisfied: set[str] = set()

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.state.value} with {len(self._results)} results>'

    def results(self) -> Sequence[StepResult]:
        return tuple(self._results)

    def result(self, name: str) -> StepResult:
        [result] = [r for r in self._results if r.name == name]
        return result

    def statuses(self):
        return {r.name: r.status for r in self._results}

    def is_satisfied(self, name: str) -> bool:
        """Whether dependents of the step may run."""
        return name in self._satisfied

    def counts(self) -> Counter:
        return Counter(r.status for r in self._results)

    def exit_code(self) -> ExitCode:
        if self.state == RunState.ABORTED:
            if self.abort_cause == AbortCause.CANCELLATION:
                return ExitCode.CANCELLED
            return ExitCode.ABORTED
        if self.state != RunState.COMPLETED:
            raise RuntimeError(f"Run is not finished: {self.state.value}")
        if any(r.status.is_failure() for r in self._results):
            return ExitCode.COMPLETED_WITH_FAILURES
        return ExitCode.OK

    def summary(self) -> str:
        counts = self.counts()
        parts = [f"{status.value}={counts[status]}" for status in StepStatus]
        state = self.state.value
        if self.abort_cause is not None:
            state += f" ({self.abort_cause.value})"
        return f"Run {state}: {', '.join(parts)}; exit code {self.exit_code().value}"

    def _record(self, result: StepResult):
        self._results.append(result)
        if result.status == StepStatus.SUCCESS:
            self._satisfied.add(result.name)
        elif result.status == StepStatus.SKIPPED and result.message == ALREADY_CONVERGED:
            self._satisfied.add(result.name)


class Engine:
    """Execute a plan in declaration order, one step at a time.

    Dependencies are only validated and used to skip dependents of
    failed steps. They never reorder the plan: package installs,
    service restarts and apt locks serialize anyway.

    Failures of steps never propagate as exceptions. They are in the
    returned run.
    """

    def __init__(
            self,
            *,
            cancellation: Optional[Cancellation] = None,
            listeners: Sequence[Callable[[StepResult], None]] = (),
            sleep: Callable[[float], None] = time.sleep,
            now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
            ):
        self._cancellation = cancellation or Cancellation()
        self._listeners = listeners
        self._sleep = sleep
        self._now = now

    def run(self, plan: Plan) -> EngineRun:
        run = EngineRun()
        run.started_at = self._now()
        run.state = RunState.RUNNING
        _logger.info("Run %d steps", len(plan))
        remaining = list(plan)
        while remaining:
            step = remaining.pop(0)
            if self._cancellation.is_requested():
                _logger.warning("Cancellation requested, %d steps left", len(remaining) + 1)
                run.state = RunState.ABORTED
                run.abort_cause = AbortCause.CANCELLATION
                self._skip_all(run, [step, *remaining], CANCELLED)
                break
            unmet = sorted(d for d in step.depends_on if not run.is_satisfied(d))
            if unmet:
                _logger.info("%s: skip, unmet dependencies: %s", step.name, ', '.join(unmet))
                result = StepResult(step.name, StepStatus.SKIPPED, DEPENDENCY_UNMET, self._now())
            else:
                result = execute(step, sleep=self._sleep, now=self._now)
            self._record(run, result)
            if result.status == StepStatus.FATAL_FAILED:
                _logger.error("%s: fatal failure, abort run", step.name)
                run.state = RunState.ABORTED
                run.abort_cause = AbortCause.FATAL_FAILURE
                self._skip_all(run, remaining, ABORTED_BY_FATAL_FAILURE)
                break
        else:
            run.state = RunState.COMPLETED
        run.finished_at = self._now()
        _logger.info("%s", run.summary())
        return run

    def _skip_all(self, run: EngineRun, steps, message: str):
        for step in steps:
            self._record(run, StepResult(step.name, StepStatus.SKIPPED, message, self._now()))

    def _record(self, run: EngineRun, result: StepResult):
        run._record(result)
        for listener in self._listeners:
            try:
                listener(result)
            except Exception:
                # Reporting must not change the outcome of the run.
                _logger.exception("%s: listener %r failed", result.name, listener)


_logger = logging.getLogger(__name__)

# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import time
from datetime import datetime
from datetime import timezone
from typing import Callable
from typing import Collection

from convergence._exceptions import CheckError
from convergence._exceptions import ConfigurationError
from convergence._result import StepResult
from convergence._result import StepStatus

ALREADY_CONVERGED = "already converged"


class Step:
    """Smallest unit of idempotent work.

    The check must not change anything on the host and must tell exactly
    whether the postcondition of apply already holds. Otherwise, a re-run
    repeats side effects, e.g. starts a second container with the same name.

    Apply signals failure by raising. Any exception counts.
    """

    def __init__(
            self,
            name: str,
            check: Callable[[], bool],
            apply: Callable[[], None],
            *,
            fatal: bool = False,
            retries: int = 0,
            retry_delay: float = 0,
            depends_on: Collection[str] = (),
            ):
        if not name:
            raise ConfigurationError("Step name must not be empty")
        if retries < 0:
            raise ConfigurationError(f"Step {name}: retries must not be negative, got {retries}")
        if retry_delay < 0:
            raise ConfigurationError(f"Step {name}: retry delay must not be negative, got {retry_delay}")
        if isinstance(depends_on, str):
            raise ConfigurationError(f"Step {name}: depends_on must be a collection of names, got {depends_on!r}")
        self.name = name
        self.check = check
        self.apply = apply
        self.fatal = fatal
        self.retries = retries
        self.retry_delay = retry_delay
        self.depends_on = frozenset(depends_on)

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.name!r}>'

    def with_options(self, **options) -> 'Step':
        """Copy with some of fatal, retries, retry_delay and depends_on replaced."""
        kwargs = {
            'fatal': self.fatal,
            'retries': self.retries,
            'retry_delay': self.retry_delay,
            'depends_on': self.depends_on,
            }
        unknown = options.keys() - kwargs.keys()
        if unknown:
            raise ConfigurationError(f"Step {self.name}: unknown options {sorted(unknown)}")
        kwargs.update(options)
        return Step(self.name, self.check, self.apply, **kwargs)


def execute(
        step: Step,
        *,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        ) -> StepResult:
    attempted_at = now()
    if postcondition_holds(step):
        _logger.debug("%s: %s", step.name, ALREADY_CONVERGED)
        return StepResult(step.name, StepStatus.SKIPPED, ALREADY_CONVERGED, attempted_at)
    attempts = step.retries + 1
    last_error = None
    for attempt in range(1, attempts + 1):
        if attempt > 1:
            _logger.info(
                "%s: retry %d of %d in %.1f sec",
                step.name, attempt - 1, step.retries, step.retry_delay)
            sleep(step.retry_delay)
            # An apply may have done its job and then failed.
            if postcondition_holds(step):
                message = f"converged after {attempt - 1} failed attempt(s)"
                return StepResult(step.name, StepStatus.SUCCESS, message, attempted_at)
        _logger.info("%s: apply, attempt %d of %d", step.name, attempt, attempts)
        try:
            step.apply()
        except Exception as e:
            _logger.warning("%s: attempt %d failed: %s", step.name, attempt, e)
            last_error = e
            continue
        return StepResult(step.name, StepStatus.SUCCESS, "applied", attempted_at)
    status = StepStatus.FATAL_FAILED if step.fatal else StepStatus.FAILED
    message = f"{attempts} attempt(s) failed, last error: {last_error}"
    return StepResult(step.name, status, message, attempted_at)


def postcondition_holds(step: Step) -> bool:
    try:
        return bool(step.check())
    except CheckError as e:
        _logger.warning("%s: check failed, assume not converged: %s", step.name, e)
        return False
    except Exception as e:
        _logger.warning(
            "%s: check raised %s, assume not converged: %s",
            step.name, e.__class__.__name__, e)
        return False


_logger = logging.getLogger(__name__)

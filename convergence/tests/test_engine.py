# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import itertools
import unittest
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from convergence._engine import ABORTED_BY_FATAL_FAILURE
from convergence._engine import CANCELLED
from convergence._engine import DEPENDENCY_UNMET
from convergence._engine import AbortCause
from convergence._engine import Cancellation
from convergence._engine import Engine
from convergence._engine import EngineRun
from convergence._engine import ExitCode
from convergence._engine import RunState
from convergence._plan import Plan
from convergence._result import StepStatus
from convergence._step import Step


class _FakeMachine:
    """Remembers what is applied. Counts side effects."""

    def __init__(self):
        self.state = set()
        self.broken = set()
        self.side_effects = []

    def step(self, name, **options):
        return Step(name, lambda: name in self.state, lambda: self._apply(name), **options)

    def _apply(self, name):
        self.side_effects.append(name)
        if name in self.broken:
            raise RuntimeError(f"{name}: exit status 1")
        self.state.add(name)


def _ticking_clock():
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    ticks = itertools.count()
    return lambda: start + timedelta(seconds=next(ticks))


class TestEngine(unittest.TestCase):

    def setUp(self):
        self._machine = _FakeMachine()
        self._sleeps = []
        self._engine = Engine(sleep=self._sleeps.append, now=_ticking_clock())

    def test_all_applied(self):
        m = self._machine
        plan = Plan([m.step('resize'), m.step('install'), m.step('enable', depends_on=['install'])])
        run = self._engine.run(plan)
        self.assertEqual(run.state, RunState.COMPLETED)
        self.assertEqual([r.name for r in run.results()], ['resize', 'install', 'enable'])
        self.assertEqual(set(run.statuses().values()), {StepStatus.SUCCESS})
        self.assertEqual(run.exit_code(), ExitCode.OK)
        self.assertEqual(m.side_effects, ['resize', 'install', 'enable'])

    def test_fatal_install_aborts(self):
        m = self._machine
        m.broken.add('install-cockpit')
        plan = Plan([
            m.step('resize'),
            m.step('install-cockpit', fatal=True),
            m.step('enable-cockpit', fatal=True, depends_on=['install-cockpit']),
            ])
        run = self._engine.run(plan)
        self.assertEqual(run.statuses(), {
            'resize': StepStatus.SUCCESS,
            'install-cockpit': StepStatus.FATAL_FAILED,
            'enable-cockpit': StepStatus.SKIPPED,
            })
        self.assertEqual(run.result('enable-cockpit').message, ABORTED_BY_FATAL_FAILURE)
        self.assertEqual(run.state, RunState.ABORTED)
        self.assertEqual(run.abort_cause, AbortCause.FATAL_FAILURE)
        self.assertEqual(run.exit_code(), ExitCode.ABORTED)

    def test_nothing_succeeds_after_fatal_failure(self):
        m = self._machine
        m.broken.add('docker')
        plan = Plan([m.step('docker', fatal=True), m.step('netdata'), m.step('cockpit')])
        run = self._engine.run(plan)
        self.assertEqual(run.result('netdata').status, StepStatus.SKIPPED)
        self.assertEqual(run.result('cockpit').status, StepStatus.SKIPPED)
        self.assertEqual(m.side_effects, ['docker'])

    def test_best_effort_model_pull_fails(self):
        m = self._machine
        m.broken.add('pull-model')
        plan = Plan([m.step('pull-model', retries=2, retry_delay=30)])
        run = self._engine.run(plan)
        self.assertEqual(run.result('pull-model').status, StepStatus.FAILED)
        self.assertEqual(run.state, RunState.COMPLETED)
        self.assertEqual(run.exit_code(), ExitCode.COMPLETED_WITH_FAILURES)
        self.assertEqual(m.side_effects, ['pull-model'] * 3)
        self.assertEqual(self._sleeps, [30, 30])

    def test_non_fatal_failure_does_not_stop_independent_steps(self):
        m = self._machine
        m.broken.add('pull-model')
        plan = Plan([m.step('pull-model'), m.step('landing-page')])
        run = self._engine.run(plan)
        self.assertEqual(run.result('pull-model').status, StepStatus.FAILED)
        self.assertEqual(run.result('landing-page').status, StepStatus.SUCCESS)

    def test_dependents_skipped_transitively(self):
        m = self._machine
        m.broken.add('ollama')
        plan = Plan([
            m.step('ollama'),
            m.step('ollama-unit', depends_on=['ollama']),
            m.step('ollama-restart', depends_on=['ollama-unit']),
            m.step('cockpit'),
            ])
        run = self._engine.run(plan)
        self.assertEqual(run.result('ollama').status, StepStatus.FAILED)
        for name in 'ollama-unit', 'ollama-restart':
            self.assertEqual(run.result(name).status, StepStatus.SKIPPED)
            self.assertEqual(run.result(name).message, DEPENDENCY_UNMET)
        self.assertEqual(run.result('cockpit').status, StepStatus.SUCCESS)
        self.assertEqual(m.side_effects, ['ollama', 'cockpit'])
        self.assertEqual(run.exit_code(), ExitCode.COMPLETED_WITH_FAILURES)

    def test_converged_dependency_is_satisfied(self):
        m = self._machine
        m.state.add('docker')
        plan = Plan([m.step('docker'), m.step('webui', depends_on=['docker'])])
        run = self._engine.run(plan)
        self.assertEqual(run.result('docker').status, StepStatus.SKIPPED)
        self.assertEqual(run.result('webui').status, StepStatus.SUCCESS)
        self.assertTrue(run.is_satisfied('docker'))

    def test_idempotence(self):
        m = self._machine
        plan = Plan([
            m.step('resize'),
            m.step('docker', fatal=True),
            m.step('webui', depends_on=['docker']),
            m.step('restart-docker', depends_on=['docker']),
            ])
        first = self._engine.run(plan)
        side_effects = list(m.side_effects)
        second = self._engine.run(plan)
        self.assertEqual(m.side_effects, side_effects)
        self.assertEqual(set(second.statuses().values()), {StepStatus.SKIPPED})
        first_successes = first.counts()[StepStatus.SUCCESS]
        self.assertGreaterEqual(second.counts()[StepStatus.SKIPPED], first_successes)
        self.assertEqual(second.exit_code(), ExitCode.OK)

    def test_dependencies_precede_dependents_in_time(self):
        m = self._machine
        plan = Plan([
            m.step('a'),
            m.step('b', depends_on=['a']),
            m.step('c'),
            m.step('d', depends_on=['b', 'c']),
            ])
        run = self._engine.run(plan)
        for step in plan:
            for dependency in step.depends_on:
                self.assertLess(
                    run.result(dependency).attempted_at,
                    run.result(step.name).attempted_at)

    def test_cancellation_between_steps(self):
        m = self._machine
        cancellation = Cancellation()

        def apply_and_cancel():
            m.side_effects.append('install')
            cancellation.request()

        plan = Plan([
            Step('install', lambda: False, apply_and_cancel),
            m.step('enable'),
            m.step('restart'),
            ])
        engine = Engine(cancellation=cancellation, sleep=self._sleeps.append)
        run = engine.run(plan)
        self.assertEqual(run.result('install').status, StepStatus.SUCCESS)
        for name in 'enable', 'restart':
            self.assertEqual(run.result(name).status, StepStatus.SKIPPED)
            self.assertEqual(run.result(name).message, CANCELLED)
        self.assertEqual(run.state, RunState.ABORTED)
        self.assertEqual(run.abort_cause, AbortCause.CANCELLATION)
        self.assertEqual(run.exit_code(), ExitCode.CANCELLED)
        self.assertEqual(m.side_effects, ['install'])

    def test_cancelled_before_start(self):
        cancellation = Cancellation()
        cancellation.request()
        m = self._machine
        run = Engine(cancellation=cancellation).run(Plan([m.step('install')]))
        self.assertEqual(run.result('install').message, CANCELLED)
        self.assertEqual(m.side_effects, [])

    def test_listeners_receive_every_result(self):
        m = self._machine
        m.broken.add('docker')
        received = []
        engine = Engine(listeners=[received.append], sleep=self._sleeps.append)
        run = engine.run(Plan([m.step('docker', fatal=True), m.step('webui')]))
        self.assertEqual(received, list(run.results()))

    def test_failing_listener_does_not_change_outcome(self):
        m = self._machine

        def broken_listener(_result):
            raise OSError(28, "No space left on device")

        engine = Engine(listeners=[broken_listener], sleep=self._sleeps.append)
        with self.assertLogs('convergence._engine', 'ERROR'):
            run = engine.run(Plan([m.step('install'), m.step('enable', depends_on=['install'])]))
        self.assertEqual(set(run.statuses().values()), {StepStatus.SUCCESS})
        self.assertEqual(run.exit_code(), ExitCode.OK)

    def test_each_run_is_fresh(self):
        plan = Plan([self._machine.step('install')])
        first = self._engine.run(plan)
        second = self._engine.run(plan)
        self.assertIsNot(first, second)
        self.assertEqual(len(first.results()), 1)
        self.assertEqual(len(second.results()), 1)

    def test_empty_plan(self):
        run = self._engine.run(Plan([]))
        self.assertEqual(run.state, RunState.COMPLETED)
        self.assertEqual(run.exit_code(), ExitCode.OK)

    def test_summary(self):
        m = self._machine
        m.broken.add('pull-model')
        run = self._engine.run(Plan([m.step('install'), m.step('pull-model')]))
        self.assertEqual(
            run.summary(),
            "Run completed: success=1, skipped=0, failed=1, fatal_failed=0; exit code 10")

    def test_exit_code_of_unfinished_run(self):
        with self.assertRaises(RuntimeError):
            EngineRun().exit_code()


if __name__ == '__main__':
    unittest.main()

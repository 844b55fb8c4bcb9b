# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Declarative, idempotent host convergence.

The goal is to keep host configuration in code under version control.
It serves as documentation for what is installed and configured.

Every action is a Step: a check that tells whether the postcondition
already holds and an apply that makes it hold.
Steps must be idempotent.
The second run must not "accumulate" changes.
Running it multiple times must be safe: on a converged host,
every step is skipped.

Steps are run only via the Engine, in the order they are declared.
Dependencies between steps do not reorder anything: they are validated
when the Plan is built and make dependents of failed steps skipped.

A failure of a fatal step stops the run. Other failures are recorded,
and the run goes on. The outcome of a run is the exit code.

Configuration must be as non-invasive as possible.
Alter the defaults as little as possible.
"""
from convergence._changes import Change
from convergence._engine import AbortCause
from convergence._engine import Cancellation
from convergence._engine import Engine
from convergence._engine import EngineRun
from convergence._engine import ExitCode
from convergence._engine import RunState
from convergence._exceptions import ApplyError
from convergence._exceptions import CheckError
from convergence._exceptions import ConfigurationError
from convergence._host import CommandFailed
from convergence._host import Host
from convergence._host import HostUnreachable
from convergence._host import LocalHost
from convergence._host import SshHost
from convergence._plan import Plan
from convergence._result import StepResult
from convergence._result import StepStatus
from convergence._step import Step
from convergence._step import execute

__all__ = [
    'AbortCause',
    'ApplyError',
    'Cancellation',
    'Change',
    'CheckError',
    'CommandFailed',
    'ConfigurationError',
    'Engine',
    'EngineRun',
    'ExitCode',
    'Host',
    'HostUnreachable',
    'LocalHost',
    'Plan',
    'RunState',
    'SshHost',
    'Step',
    'StepResult',
    'StepStatus',
    'execute',
    ]

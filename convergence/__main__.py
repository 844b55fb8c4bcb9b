# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import argparse
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Sequence

from convergence._config import read_config
from convergence._config import user_config_path
from convergence._endpoints import report_endpoints
from convergence._engine import Cancellation
from convergence._engine import Engine
from convergence._engine import ExitCode
from convergence._exceptions import ConfigurationError
from convergence._facts import HostFacts
from convergence._facts import gather_facts
from convergence._host import CommandFailed
from convergence._host import HostUnreachable
from convergence._host import make_host
from convergence._journal import log_result
from convergence._journal import write_journal
from convergence._lock import AlreadyLocked
from convergence._lock import host_locked
from convergence._logging import init_logging
from convergence._plan import Plan
from convergence._step import postcondition_holds
from convergence.stacks import stacks


def main(args: Sequence[str]) -> int:
    parsed_args = _parse_args(args)
    host = make_host(parsed_args.host)
    log_file = init_logging(host.name, verbose=parsed_args.verbose)
    _logger.debug("Log file: %s", log_file)
    stack = stacks[parsed_args.stack]
    try:
        config = read_config(
            host.config_name(), stack.config_path, user_config_path, *parsed_args.config)
        facts = gather_facts(host, {name: config.get_optional(name) for name in HostFacts._fields})
        plan = Plan(config.customize(stack.build_steps(host, config, facts)))
    except ConfigurationError as e:
        _logger.error("Configuration error: %s", e)
        return ExitCode.CONFIGURATION_ERROR
    except HostUnreachable as e:
        _logger.error("Cannot connect: %s", e)
        return ExitCode.HOST_UNREACHABLE
    except CommandFailed as e:
        _logger.error("Cannot gather host facts: %s", e)
        return ExitCode.HOST_UNREACHABLE
    if parsed_args.list:
        _print_plan(plan)
        return ExitCode.OK
    if parsed_args.check:
        return _report_drift(plan)
    cancellation = Cancellation()
    try:
        with host_locked(host.name), _cancelled_on_signals(cancellation):
            run = Engine(cancellation=cancellation, listeners=[log_result]).run(plan)
    except AlreadyLocked as e:
        _logger.error("Host is busy: %s", e)
        return ExitCode.HOST_BUSY
    try:
        write_journal(run, host.name)
    except OSError as e:
        _logger.error("Cannot save journal: %s", e)
    for line in report_endpoints(stack.endpoints(config, facts), probe=not parsed_args.no_probe):
        print(line)
    print(run.summary())
    return run.exit_code()


def _print_plan(plan: Plan):
    for i, step in enumerate(plan, 1):
        flags = ['fatal' if step.fatal else 'best-effort']
        if step.retries:
            flags.append(f'retries={step.retries} delay={step.retry_delay:g}s')
        if step.depends_on:
            flags.append('after ' + ', '.join(sorted(step.depends_on)))
        print(f"{i:3d}. {step.name} ({'; '.join(flags)})")


def _report_drift(plan: Plan) -> int:
    """Run checks only. Nothing is applied."""
    drifted = []
    for step in plan:
        if postcondition_holds(step):
            print(f"converged  {step.name}")
        else:
            print(f"DRIFTED    {step.name}")
            drifted.append(step.name)
    print(f"{len(drifted)} of {len(plan)} steps drifted")
    return ExitCode.COMPLETED_WITH_FAILURES if drifted else ExitCode.OK


@contextmanager
def _cancelled_on_signals(cancellation: Cancellation):
    """Stop between steps on Ctrl+C or SIGTERM.

    A step being applied is not interrupted: package installs and
    service restarts are not safe to interrupt.
    """

    def _handler(signum, _frame):
        _logger.warning("Signal %s received, stop after the current step", signal.Signals(signum).name)
        cancellation.request()

    previous = {s: signal.signal(s, _handler) for s in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for s, handler in previous.items():
            signal.signal(s, handler)


def _parse_args(args: Sequence[str]):
    parser = argparse.ArgumentParser(
        prog='python -m convergence',
        description="Converge a host to the configuration of a stack. Safe to re-run.")
    parser.add_argument('host', help="'localhost' or SSH destination, e.g. admin@ai-01.lan; one run per host at a time, whatever the user")
    parser.add_argument('--stack', choices=sorted(stacks), default='ai_server', help="default: %(default)s")
    parser.add_argument(
        '--config', action='append', type=Path, default=[],
        help=f"extra INI file, may be repeated; read after the stack's and {user_config_path}")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--list', action='store_true', help="print the plan and exit")
    mode.add_argument('--check', action='store_true', help="report drift, apply nothing")
    parser.add_argument('--no-probe', action='store_true', help="do not probe service endpoints")
    parser.add_argument('--verbose', '-v', action='store_true', help="log commands to console")
    return parser.parse_args(args)


_logger = logging.getLogger(__name__)

if __name__ == '__main__':
    sys.exit(main(sys.argv[1:]))

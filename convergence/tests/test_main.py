# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import contextlib
import functools
import io
import os
import shutil
import signal
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

from convergence.__main__ import main
from convergence._engine import CANCELLED
from convergence._engine import ExitCode
from convergence._lock import host_locked
from convergence._step import Step
from convergence.stacks import stacks
from convergence.tests._fake_host import FakeHost

_facts_ini = (
    '[defaults]\n'
    'server_ip = 10.0.0.5\n'
    'architecture = amd64\n'
    'codename = noble\n'
    'login_user = admin\n'
    )


def _build_steps(host, config, facts):
    return [
        Step(
            'install-tool',
            lambda: host.succeeds('test -e /usr/bin/tool'),
            lambda: host.check_output('sudo apt-get install -y tool'),
            fatal=True),
        Step(
            'enable-tool',
            lambda: host.succeeds('systemctl is-active tool'),
            lambda: host.check_output('sudo systemctl enable --now tool'),
            depends_on=['install-tool']),
        ]


def _endpoints(config, facts):
    return {'Tool': f'http://{facts.server_ip}:{config.get("tool_port")}'}


class TestMain(unittest.TestCase):

    def setUp(self):
        self._dir = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, self._dir)
        stack_ini = self._dir / 'tool.ini'
        stack_ini.write_text(_facts_ini + 'tool_port = 8000\n')
        stack = SimpleNamespace(config_path=stack_ini, build_steps=_build_steps, endpoints=_endpoints)
        self.host = FakeHost('ai-01')
        self.journal = mock.Mock()
        self._lock_dir = self._dir / 'locks'
        patches = [
            mock.patch.dict(stacks, {'tool': stack}),
            mock.patch('convergence.__main__.make_host', return_value=self.host),
            mock.patch('convergence.__main__.init_logging', return_value=self._dir / 'ai-01.log'),
            mock.patch('convergence.__main__.write_journal', self.journal),
            mock.patch('convergence.__main__.user_config_path', self._dir / 'absent.ini'),
            mock.patch(
                'convergence.__main__.host_locked',
                functools.partial(host_locked, lock_dir=self._lock_dir)),
            ]
        for patch in patches:
            patch.start()
            self.addCleanup(patch.stop)

    def _main(self, *args):
        output = io.StringIO()
        with contextlib.redirect_stdout(output):
            exit_code = main(['ai-01', '--stack', 'tool', '--no-probe', *args])
        return exit_code, output.getvalue()

    def _extra_config(self, text):
        path = self._dir / 'extra.ini'
        path.write_text(text)
        return str(path)

    def test_list(self):
        exit_code, output = self._main('--list')
        self.assertEqual(exit_code, ExitCode.OK)
        self.assertIn('1. install-tool (fatal)', output)
        self.assertIn('2. enable-tool (best-effort; after install-tool)', output)
        self.assertEqual(self.host.commands, [])

    def test_check_reports_drift(self):
        self.host.answer('test -e', returncode=1)
        exit_code, output = self._main('--check')
        self.assertEqual(exit_code, ExitCode.COMPLETED_WITH_FAILURES)
        self.assertIn('DRIFTED    install-tool', output)
        self.assertIn('converged  enable-tool', output)
        self.assertFalse(self.host.ran('sudo'))
        self.journal.assert_not_called()

    def test_converged(self):
        exit_code, output = self._main()
        self.assertEqual(exit_code, ExitCode.OK)
        self.assertIn('Tool is available at: http://10.0.0.5:8000', output)
        self.assertIn('skipped=2', output)
        self.assertFalse(self.host.ran('sudo'))
        self.journal.assert_called_once()

    def test_journal_not_saved(self):
        self.journal.side_effect = PermissionError(13, "Permission denied")
        exit_code, output = self._main()
        self.assertEqual(exit_code, ExitCode.OK)
        self.assertIn('Run completed', output)

    def test_applied(self):
        self.host.answer('test -e', returncode=1)
        self.host.answer('systemctl is-active', returncode=3)
        exit_code, output = self._main()
        self.assertEqual(exit_code, ExitCode.OK)
        self.assertTrue(self.host.ran('apt-get install -y tool'))
        self.assertTrue(self.host.ran('systemctl enable --now tool'))
        self.assertIn('success=2', output)

    def test_fatal_failure(self):
        self.host.answer('test -e', returncode=1)
        self.host.answer('apt-get install', returncode=100, stderr='E: Unable to locate package tool')
        exit_code, output = self._main()
        self.assertEqual(exit_code, ExitCode.ABORTED)
        self.assertFalse(self.host.ran('systemctl'))
        self.assertIn('Run aborted', output)

    def test_step_options_from_command_line_config(self):
        self.host.answer('test -e', returncode=1)
        self.host.answer('apt-get install', returncode=100)
        config = self._extra_config('[ai-*]\nstep.install-tool.fatal = no\n')
        exit_code, _output = self._main('--config', config)
        self.assertEqual(exit_code, ExitCode.COMPLETED_WITH_FAILURES)

    def test_configuration_error(self):
        config = self._extra_config('[defaults]\nstep.install-tol.retries = 2\n')
        exit_code, _output = self._main('--config', config)
        self.assertEqual(exit_code, ExitCode.CONFIGURATION_ERROR)
        self.assertEqual(self.host.commands, [])

    def test_facts_unavailable(self):
        config = self._extra_config('[defaults]\nserver_ip =\n')
        self.host.answer('hostname -I', returncode=127, stderr='hostname: command not found')
        exit_code, _output = self._main('--config', config)
        self.assertEqual(exit_code, ExitCode.HOST_UNREACHABLE)

    def test_interrupted(self):
        def interrupt():
            self.host.check_output('sudo apt-get install -y tool')
            os.kill(os.getpid(), signal.SIGINT)

        steps = [
            Step('install-tool', lambda: False, interrupt, fatal=True),
            Step('enable-tool', lambda: False, lambda: self.host.check_output('sudo systemctl enable --now tool')),
            Step('restart-tool', lambda: False, lambda: self.host.check_output('sudo systemctl restart tool')),
            ]
        previous_handlers = signal.getsignal(signal.SIGINT), signal.getsignal(signal.SIGTERM)
        with mock.patch.object(stacks['tool'], 'build_steps', lambda host, config, facts: steps):
            exit_code, output = self._main()
        self.assertEqual(exit_code, ExitCode.CANCELLED)
        self.assertIn('Run aborted (cancellation)', output)
        self.assertFalse(self.host.ran('systemctl'))
        [run, _host_name] = self.journal.call_args.args
        self.assertEqual(run.result('install-tool').message, 'applied')
        self.assertEqual(run.result('enable-tool').message, CANCELLED)
        self.assertEqual(run.result('restart-tool').message, CANCELLED)
        self.assertEqual((signal.getsignal(signal.SIGINT), signal.getsignal(signal.SIGTERM)), previous_handlers)

    def test_host_busy(self):
        with host_locked('ai-01', self._lock_dir):
            exit_code, _output = self._main()
        self.assertEqual(exit_code, ExitCode.HOST_BUSY)
        self.journal.assert_not_called()


if __name__ == '__main__':
    unittest.main()

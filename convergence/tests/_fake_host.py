# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import re
from subprocess import CompletedProcess

from convergence._host import Host


class FakeHost(Host):
    """Answer commands by the first matching regular expression.

    Unmatched commands succeed with empty output.
    Every command is recorded with its input.
    """

    def __init__(self, name='fake-host'):
        super().__init__(name)
        self._answers = []
        self.commands = []
        self.inputs = []

    def answer(self, pattern: str, returncode: int = 0, stdout: str = '', stderr: str = ''):
        self._answers.insert(0, (re.compile(pattern), returncode, stdout, stderr))

    def run(self, command, *, input=None, timeout_sec=600):
        self.commands.append(command)
        self.inputs.append(input)
        for pattern, returncode, stdout, stderr in self._answers:
            if pattern.search(command):
                return CompletedProcess(command, returncode, stdout.encode(), stderr.encode())
        return CompletedProcess(command, 0, b'', b'')

    def ran(self, pattern: str) -> bool:
        return any(re.search(pattern, c) for c in self.commands)

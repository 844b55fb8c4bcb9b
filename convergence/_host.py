# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import socket
import subprocess
from abc import ABCMeta
from abc import abstractmethod
from subprocess import CalledProcessError
from subprocess import CompletedProcess
from typing import Optional

from convergence._exceptions import ApplyError
from convergence._ssh import SSHCannotConnect
from convergence._ssh import ssh_still

_DEFAULT_TIMEOUT_SEC = 600


class CommandFailed(CalledProcessError, ApplyError):

    def __str__(self):
        stderr = (self.stderr or b'').decode(errors='backslashreplace').strip()[:2000]
        return f"Command {self.cmd!r} died with exit status {self.returncode}: {stderr}"


class HostUnreachable(Exception):
    pass


class Host(metaclass=ABCMeta):
    """Where commands run. The only way to observe or change a host.

    Commands are Bash command lines. They are written in the most raw form,
    so that it is clear what is being run and it is easy to copy.
    """

    def __init__(self, name: str):
        self.name = name

    def __repr__(self):
        return f'{self.__class__.__name__}({self.name!r})'

    @abstractmethod
    def run(
            self,
            command: str,
            *,
            input: Optional[bytes] = None,  # noqa PyShadowingBuiltins
            timeout_sec: float = _DEFAULT_TIMEOUT_SEC,
            ) -> CompletedProcess:
        """Run command and return result. Non-zero exit status is not an error."""
        pass

    def check_output(self, command: str, *, input: Optional[bytes] = None) -> str:  # noqa PyShadowingBuiltins
        r = self.run(command, input=input)
        if r.returncode != 0:
            _logger.debug("%s: exit status %d: %s", self.name, r.returncode, command)
            raise CommandFailed(r.returncode, command, r.stdout, r.stderr)
        return r.stdout.decode(errors='backslashreplace')

    def succeeds(self, command: str) -> bool:
        return self.run(command).returncode == 0

    def config_name(self) -> str:
        """Name to match against host masks in config files."""
        return self.name


class LocalHost(Host):

    def __init__(self):
        super().__init__('localhost')

    def run(self, command, *, input=None, timeout_sec=_DEFAULT_TIMEOUT_SEC):
        _logger.debug("%s: Run: %s", self.name, command)
        return subprocess.run(
            ['bash', '-c', command],
            input=input,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL if input is None else None,
            # Ctrl+C reaches the whole foreground process group.
            # A command being applied must not get it.
            start_new_session=True,
            timeout=timeout_sec,
            )

    def config_name(self):
        return socket.gethostname()


class SshHost(Host):
    """Host reached with the OpenSSH client.

    Keys and host names are taken from the user's SSH config.
    Interactive authentication is not supported.
    """

    def run(self, command, *, input=None, timeout_sec=_DEFAULT_TIMEOUT_SEC):
        try:
            return ssh_still(self.name, command, stdin=input, timeout=timeout_sec)
        except SSHCannotConnect as e:
            raise HostUnreachable(f"{self.name}: {e}")


def make_host(destination: str) -> Host:
    if destination in ('localhost', '127.0.0.1', '::1'):
        return LocalHost()
    return SshHost(destination)


_logger = logging.getLogger(__name__)

# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import shlex
import subprocess
from typing import Optional

# In BatchMode, execution fails if interactive input is required.
# A dead connection is noticed in a minute, not after the step timeout.
_options = [
    '-oBatchMode=yes',
    '-oConnectTimeout=20',
    '-oServerAliveInterval=15',
    '-oServerAliveCountMax=4',
    ]


def ssh_still(destination: str, command: str, *, stdin: Optional[bytes] = None, timeout: float = 600):
    """Run command remotely; return the result whatever the exit status is.

    Exit status 255 is reserved by ssh for its own errors.
    """
    ssh_command = ['ssh', *_options, destination, command]
    _logger.debug("Run: %s", shlex.join(ssh_command))
    r = subprocess.run(
        ssh_command,
        input=stdin,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        # It may hang waiting for input when no input is actually needed.
        stdin=subprocess.DEVNULL if stdin is None else None,
        # Ctrl+C must not kill ssh in the middle of a step.
        start_new_session=True,
        timeout=timeout,
        )
    if r.returncode == 255:
        raise SSHCannotConnect(r.stderr.decode(errors='backslashreplace').strip())
    return r


class SSHCannotConnect(Exception):
    pass


_logger = logging.getLogger(__name__)

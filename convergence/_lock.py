# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import fcntl
import logging
import re
from contextlib import contextmanager
from pathlib import Path

# "flock", which is a BSD-style simple file lock, is used instead of "lockf", which is
# a wrapper over POSIX fcntl file lock, due to the fact that fcntl.lockf locks
# pair (pid, inode) what effectively allows several file descriptors to be locked exclusively
# assuming that they are owned by the same process and open the same file.
# See: https://apenwarr.ca/log/20101213
# See: https://man7.org/linux/man-pages/man2/flock.2.html

default_lock_dir = Path('~/.cache/convergence/locks').expanduser()


class AlreadyLocked(Exception):
    pass


def _try_lock_exclusively(fileno: int) -> bool:
    try:
        fcntl.flock(fileno, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as err:
        if err.errno == 11:
            return False
        raise
    return True


@contextmanager
def host_locked(host_name: str, lock_dir: Path = default_lock_dir):
    """Allow at most one run against a host from this machine.

    The login user is not a part of the key: "admin@ai-01" and "ai-01"
    are the same host.

    The lock is released when the process dies, whatever the reason.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    file = lock_dir / (_lock_name(host_name) + '.lock')
    _logger.debug("%s: Try to lock exclusively", file)
    file.touch(exist_ok=True)
    with file.open('rb') as fd:
        if not _try_lock_exclusively(fd.fileno()):
            raise AlreadyLocked(f"Another run holds {file}")
        _logger.info("%s: Locked exclusively", file)
        try:
            yield
        finally:
            _logger.info("%s: Lock is released", file)


def _lock_name(destination: str) -> str:
    """Key a lock by the host part of an SSH destination.

    >>> _lock_name('admin@AI-01.lan')
    'ai-01.lan'
    >>> _lock_name('ai-01.lan')
    'ai-01.lan'
    """
    [_user, _at, host] = destination.rpartition('@')
    return re.sub(r'[^\w.-]+', '_', host.lower())


_logger = logging.getLogger(__name__)

# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Changes of a host, each with a way to tell whether it is already done.

Every change is formulated in terms of commands run on a Host.
It is desirable that commands be written in the most raw form,
so that it is clear what is being run and it is easy to copy.

A check is a read-only query of the state managed by an external
collaborator: dpkg, systemd, docker, ollama or the filesystem itself.
It never installs, restarts or writes anything.
"""
import hashlib
import json
import logging
import re
import shlex
from abc import ABCMeta
from abc import abstractmethod
from pathlib import PurePosixPath
from typing import Mapping
from typing import Sequence

from convergence._exceptions import CheckError
from convergence._host import Host
from convergence._step import Step


class Change(metaclass=ABCMeta):

    def __init__(self, host: Host):
        self._host = host

    @abstractmethod
    def is_converged(self) -> bool:
        pass

    @abstractmethod
    def apply(self):
        pass

    def as_step(self, name: str, **options) -> Step:
        return Step(name, self.is_converged, self.apply, **options)


class AptPackages(Change):

    def __init__(self, host: Host, packages: Sequence[str], *, update: bool = False):
        super().__init__(host)
        if not packages:
            raise ValueError("No packages given")
        self._packages = list(packages)
        self._update = update

    def __repr__(self):
        return f'{AptPackages.__name__}({self._packages!r}, update={self._update!r})'

    def is_converged(self):
        # Exit status is 1 if any package is unknown to dpkg. Not an error.
        r = self._host.run(
            "dpkg-query -W -f='${Package} ${db:Status-Abbrev}\\n' " + shlex.join(self._packages))
        installed = _parse_installed(r.stdout.decode())
        missing = [p for p in self._packages if p not in installed]
        if missing:
            _logger.info("%s: not installed: %s", self._host, ' '.join(missing))
            return False
        return True

    def apply(self):
        if self._update:
            self._host.check_output('sudo apt-get update')
        self._host.check_output(
            'sudo DEBIAN_FRONTEND=noninteractive apt-get install -y ' + shlex.join(self._packages))


def _parse_installed(dpkg_query_output: str):
    r"""Parse names of fully installed packages.

    >>> sorted(_parse_installed('curl ii \ncockpit un \nnetdata iU \n'))
    ['curl']
    """
    installed = set()
    for line in dpkg_query_output.splitlines():
        name, _, status = line.partition(' ')
        if status.startswith('ii'):
            installed.add(name)
    return installed


class AptUpgraded(Change):

    def __repr__(self):
        return f'{AptUpgraded.__name__}()'

    def is_converged(self):
        # Simulation does not need root and does not touch the system.
        output = self._host.check_output('apt-get -s upgrade')
        pending = [line for line in output.splitlines() if line.startswith('Inst ')]
        if pending:
            _logger.info("%s: %d packages to upgrade", self._host, len(pending))
            return False
        return True

    def apply(self):
        self._host.check_output('sudo apt-get update')
        self._host.check_output('sudo DEBIAN_FRONTEND=noninteractive apt-get upgrade -y')


class PipPackages(Change):
    """Install Python packages system-wide, for the root user.

    Ubuntu marks the system Python as externally managed (PEP 668).
    The packages are needed by services run by root from /usr/bin/python3,
    hence the override.
    """

    def __init__(self, host: Host, packages: Sequence[str]):
        super().__init__(host)
        if not packages:
            raise ValueError("No packages given")
        self._packages = list(packages)

    def __repr__(self):
        return f'{PipPackages.__name__}({self._packages!r})'

    def is_converged(self):
        output = self._host.check_output('sudo python3 -m pip list --format=json --disable-pip-version-check')
        try:
            installed = {_canonical_name(p['name']) for p in json.loads(output)}
        except (ValueError, KeyError, TypeError) as e:
            raise CheckError(f"Unexpected pip list output: {e}")
        missing = [p for p in self._packages if _canonical_name(p) not in installed]
        if missing:
            _logger.info("%s: Python packages not installed: %s", self._host, ' '.join(missing))
            return False
        return True

    def apply(self):
        self._host.check_output(
            'sudo python3 -m pip install --break-system-packages --ignore-installed '
            + shlex.join(self._packages))


def _canonical_name(name: str) -> str:
    """Normalize as PEP 503 says.

    >>> _canonical_name('Scikit_Learn')
    'scikit-learn'
    >>> _canonical_name('umap.learn')
    'umap-learn'
    """
    return re.sub(r'[-_.]+', '-', name).lower()


class RemoteFile(Change):
    """Download a file unless it is already there.

    Content is not compared: remote content may change at any moment.
    """

    def __init__(self, host: Host, url: str, path: str):
        super().__init__(host)
        self._url = url
        self._path = PurePosixPath(path)

    def __repr__(self):
        return f'{RemoteFile.__name__}({self._url!r}, {str(self._path)!r})'

    def is_converged(self):
        return self._host.succeeds(f'test -s {shlex.quote(str(self._path))}')

    def apply(self):
        path = shlex.quote(str(self._path))
        self._host.check_output(f'sudo install -d -m 0755 {shlex.quote(str(self._path.parent))}')
        self._host.check_output(
            f'set -o pipefail; curl -fsSL {shlex.quote(self._url)} | sudo tee {path} > /dev/null')
        self._host.check_output(f'sudo chmod a+r {path}')


class FileContent(Change):
    """Upload file. Set permissions. Make dirs.

    >>> FileContent(None, '/opt/app/app.py', b'', mode='755')._install_command()
    'sudo install /dev/stdin /opt/app/app.py -m 0755 -o root -g root -D'
    >>> FileContent(None, '/etc/x', b'', mode='u=rw')
    Traceback (most recent call last):
    ...
    ValueError: Mode must be octal, got 'u=rw'
    """

    def __init__(self, host: Host, path: str, content: bytes, *, mode: str = '0644', owner: str = 'root'):
        super().__init__(host)
        if not re.fullmatch(r'[0-7]{3,4}', mode):
            raise ValueError(f"Mode must be octal, got {mode!r}")
        self._path = PurePosixPath(path)
        self._content = content
        self._mode = mode.zfill(4)
        self._owner = owner

    def __repr__(self):
        return f'{FileContent.__name__}({str(self._path)!r}, <{len(self._content)} bytes>, mode={self._mode!r})'

    def is_converged(self):
        path = shlex.quote(str(self._path))
        r = self._host.run(f'sudo stat -c %a:%U {path} && sudo sha256sum {path}')
        if r.returncode != 0:
            _logger.info("%s: %s: cannot stat or read", self._host, self._path)
            return False
        [stat_line, sum_line, *_] = r.stdout.decode().splitlines() + ['', '']
        mode, _, owner = stat_line.partition(':')
        [actual_digest, *_] = sum_line.split() or ['']
        expected_digest = hashlib.sha256(self._content).hexdigest()
        if actual_digest != expected_digest:
            _logger.info("%s: %s: content differs", self._host, self._path)
            return False
        if mode.zfill(4) != self._mode or owner != self._owner:
            _logger.info("%s: %s: mode or owner differs: %s", self._host, self._path, stat_line)
            return False
        return True

    def apply(self):
        self._host.check_output(self._install_command(), input=self._content)

    def _install_command(self):
        params = shlex.join(['-m', self._mode, '-o', self._owner, '-g', self._owner, '-D'])
        return f'sudo install /dev/stdin {shlex.quote(str(self._path))} {params}'


class TextReplaced(Change):
    """Replace a fragment of a config file; keep owner and permissions."""

    def __init__(self, host: Host, path: str, old: str, new: str):
        super().__init__(host)
        if old in new:
            # The check would never pass.
            raise ValueError(f"Replacement {new!r} contains {old!r}")
        self._path = path
        self._old = old
        self._new = new

    def __repr__(self):
        return f'{TextReplaced.__name__}({self._path!r}, {self._old!r}, {self._new!r})'

    def is_converged(self):
        r = self._host.run(f'sudo grep -qF -- {shlex.quote(self._old)} {shlex.quote(self._path)}')
        if r.returncode == 0:
            return False
        if r.returncode == 1:
            return True
        raise CheckError(f"Cannot read {self._path}: {r.stderr.decode(errors='backslashreplace')}")

    def apply(self):
        content = self._host.check_output(f'sudo cat {shlex.quote(self._path)}')
        updated = content.replace(self._old, self._new)
        self._host.check_output(f'sudo tee {shlex.quote(self._path)} > /dev/null', input=updated.encode())


class ScriptInstalled(Change):
    """Run a vendor installer script unless its command is on PATH."""

    def __init__(self, host: Host, command: str, installer_url: str):
        super().__init__(host)
        self._command = command
        self._url = installer_url

    def __repr__(self):
        return f'{ScriptInstalled.__name__}({self._command!r}, {self._url!r})'

    def is_converged(self):
        return self._host.succeeds(f'command -v {shlex.quote(self._command)}')

    def apply(self):
        self._host.check_output(f'set -o pipefail; curl -fsSL {shlex.quote(self._url)} | sh')


class UnitEnabled(Change):

    def __init__(self, host: Host, unit: str):
        super().__init__(host)
        self._unit = unit

    def __repr__(self):
        return f'{UnitEnabled.__name__}({self._unit!r})'

    def is_converged(self):
        u = shlex.quote(self._unit)
        return self._host.succeeds(f'systemctl is-enabled --quiet {u} && systemctl is-active --quiet {u}')

    def apply(self):
        self._host.check_output(f'sudo systemctl enable --now {shlex.quote(self._unit)}')


class DaemonReloaded(Change):
    """Make systemd re-read a changed unit file."""

    def __init__(self, host: Host, unit: str):
        super().__init__(host)
        self._unit = unit

    def __repr__(self):
        return f'{DaemonReloaded.__name__}({self._unit!r})'

    def is_converged(self):
        output = self._host.check_output(
            f'systemctl show -p NeedDaemonReload --value {shlex.quote(self._unit)}')
        return output.strip() == 'no'

    def apply(self):
        self._host.check_output('sudo systemctl daemon-reload')


class UnitRestarted(Change):
    """Unit is active and has been (re)started after its files changed.

    The start time of the unit is compared to the modification time of
    the watched files, so a converged host is not restarted again.
    Without watched files, an active unit is enough.
    """

    def __init__(self, host: Host, unit: str, watched_paths: Sequence[str] = ()):
        super().__init__(host)
        self._unit = unit
        self._watched_paths = list(watched_paths)

    def __repr__(self):
        return f'{UnitRestarted.__name__}({self._unit!r}, {self._watched_paths!r})'

    def is_converged(self):
        u = shlex.quote(self._unit)
        if not self._host.succeeds(f'systemctl is-active --quiet {u}'):
            _logger.info("%s: %s: not active", self._host, self._unit)
            return False
        if not self._watched_paths:
            return True
        started_at = _parse_epoch(self._host.check_output(
            f'date -d "$(systemctl show -p ActiveEnterTimestamp --value {u})" +%s'))
        modified_at = [
            _parse_epoch(line)
            for line in self._host.check_output(
                'sudo stat -c %Y ' + shlex.join(self._watched_paths)).splitlines()
            ]
        # Same second counts as before the start: files are written, then the unit starts.
        if max(modified_at) > started_at:
            _logger.info("%s: %s: files changed after start", self._host, self._unit)
            return False
        return True

    def apply(self):
        self._host.check_output(f'sudo systemctl restart {shlex.quote(self._unit)}')


def _parse_epoch(text: str) -> int:
    try:
        return int(text.strip())
    except ValueError:
        raise CheckError(f"Not a timestamp: {text!r}")


class UserInGroup(Change):

    def __init__(self, host: Host, user: str, group: str):
        super().__init__(host)
        self._user = user
        self._group = group

    def __repr__(self):
        return f'{UserInGroup.__name__}({self._user!r}, {self._group!r})'

    def is_converged(self):
        groups = self._host.check_output(f'id -nG {shlex.quote(self._user)}').split()
        return self._group in groups

    def apply(self):
        self._host.check_output(f'sudo usermod -aG {shlex.quote(self._group)} {shlex.quote(self._user)}')


class Container(Change):
    """Long-running container, re-created whenever its parameters change.

    Parameters are hashed into a label. A running container with the same
    label is considered converged; anything else is removed and started anew.
    Named volumes survive re-creation.
    """

    _label = 'convergence.signature'

    def __init__(
            self,
            host: Host,
            name: str,
            image: str,
            *,
            ports: Sequence[str] = (),
            env: Mapping[str, str] = (),
            volumes: Sequence[str] = (),
            add_hosts: Sequence[str] = (),
            restart: str = 'always',
            ):
        super().__init__(host)
        self._name = name
        self._image = image
        args = ['--name', name, '--restart', restart]
        for port in ports:
            args.extend(['-p', port])
        for host_entry in add_hosts:
            args.append(f'--add-host={host_entry}')
        for key, value in dict(env).items():
            args.extend(['-e', f'{key}={value}'])
        for volume in volumes:
            args.extend(['-v', volume])
        self._args = args
        self._signature = hashlib.sha256(shlex.join([*args, image]).encode()).hexdigest()[:16]

    def __repr__(self):
        return f'{Container.__name__}({self._name!r}, {self._image!r})'

    def run_command(self):
        label = f'{self._label}={self._signature}'
        return 'sudo docker run -d ' + shlex.join([*self._args, '--label', label, self._image])

    def is_converged(self):
        r = self._host.run(f'sudo docker inspect --type container {shlex.quote(self._name)}')
        if r.returncode != 0:
            _logger.info("%s: container %s does not exist", self._host, self._name)
            return False
        try:
            [container] = json.loads(r.stdout)
            running = container['State']['Running']
            labels = container['Config']['Labels'] or {}
        except (ValueError, KeyError, TypeError) as e:
            raise CheckError(f"Unexpected docker inspect output: {e}")
        if labels.get(self._label) != self._signature:
            _logger.info("%s: container %s has different parameters", self._host, self._name)
            return False
        if not running:
            _logger.info("%s: container %s is not running", self._host, self._name)
            return False
        return True

    def apply(self):
        r = self._host.run(f'sudo docker rm -f {shlex.quote(self._name)}')
        if r.returncode == 0:
            _logger.info("%s: container %s removed", self._host, self._name)
        else:
            _logger.debug("%s: nothing to remove: %s", self._host, r.stderr)
        self._host.check_output(self.run_command())


class DockerSmokeTest(Change):
    """Run a throwaway container once to prove the runtime works."""

    def __init__(self, host: Host, image: str = 'hello-world'):
        super().__init__(host)
        self._image = image

    def __repr__(self):
        return f'{DockerSmokeTest.__name__}({self._image!r})'

    def is_converged(self):
        return self._host.succeeds(f'sudo docker image inspect {shlex.quote(self._image)}')

    def apply(self):
        self._host.check_output(f'sudo docker run --rm {shlex.quote(self._image)}')


class OllamaModel(Change):

    def __init__(self, host: Host, model: str, server: str):
        super().__init__(host)
        self._model = _with_tag(model)
        self._server = server

    def __repr__(self):
        return f'{OllamaModel.__name__}({self._model!r})'

    def is_converged(self):
        output = self._host.check_output(f'OLLAMA_HOST={shlex.quote(self._server)} ollama list')
        return self._model in _parse_model_list(output)

    def apply(self):
        self._host.check_output(
            f'OLLAMA_HOST={shlex.quote(self._server)} ollama pull {shlex.quote(self._model)}')


def _with_tag(model: str) -> str:
    """Ollama lists untagged models as latest.

    >>> _with_tag('mistral')
    'mistral:latest'
    >>> _with_tag('phi4:14b')
    'phi4:14b'
    """
    return model if ':' in model else model + ':latest'


def _parse_model_list(output: str):
    """Parse names from ollama list.

    >>> _parse_model_list(
    ...     'NAME          ID              SIZE      MODIFIED\\n'
    ...     'phi4:14b      ac896e5b8b34    9.1 GB    2 days ago\\n'
    ...     'mistral:7b    f974a74358d6    4.1 GB    2 days ago\\n')
    ['phi4:14b', 'mistral:7b']
    """
    [_header, *lines] = output.splitlines() or ['']
    return [line.split()[0] for line in lines if line.strip()]


class LogicalVolumeExtended(Change):
    """Give all free space of the volume group to the logical volume."""

    def __init__(self, host: Host, volume: str):
        super().__init__(host)
        self._volume = volume

    def __repr__(self):
        return f'{LogicalVolumeExtended.__name__}({self._volume!r})'

    def is_converged(self):
        group = self._host.check_output(
            f'sudo lvs --noheadings -o vg_name {shlex.quote(self._volume)}').strip()
        if not group:
            raise CheckError(f"No volume group for {self._volume}")
        free = self._host.check_output(
            f'sudo vgs --noheadings -o vg_free_count {shlex.quote(group)}').strip()
        try:
            free_extents = int(free)
        except ValueError:
            raise CheckError(f"Unexpected free extent count: {free!r}")
        _logger.info("%s: %s: %d free extents", self._host, group, free_extents)
        return free_extents == 0

    def apply(self):
        self._host.check_output(f'sudo lvextend -l +100%FREE {shlex.quote(self._volume)}')


class FilesystemGrown(Change):
    """Grow an ext2/3/4 filesystem to the size of its block device."""

    def __init__(self, host: Host, device: str):
        super().__init__(host)
        self._device = device

    def __repr__(self):
        return f'{FilesystemGrown.__name__}({self._device!r})'

    def is_converged(self):
        d = shlex.quote(self._device)
        device_size = int(self._host.check_output(f'sudo blockdev --getsize64 {d}').strip())
        superblock = _parse_superblock(self._host.check_output(f'sudo dumpe2fs -h {d} 2>/dev/null'))
        try:
            block_size = int(superblock['Block size'])
            filesystem_size = int(superblock['Block count']) * block_size
        except (KeyError, ValueError) as e:
            raise CheckError(f"Unexpected dumpe2fs output: {e}")
        _logger.info(
            "%s: %s: device %d bytes, filesystem %d bytes",
            self._host, self._device, device_size, filesystem_size)
        # A tail smaller than a block cannot be used.
        return device_size - filesystem_size < block_size

    def apply(self):
        self._host.check_output(f'sudo resize2fs {shlex.quote(self._device)}')


def _parse_superblock(output: str):
    """Parse dumpe2fs -h output.

    >>> _parse_superblock('Block count:              26214400\\nBlock size:               4096\\n')
    {'Block count': '26214400', 'Block size': '4096'}
    """
    result = {}
    for line in output.splitlines():
        key, colon, value = line.partition(':')
        if colon:
            result[key.strip()] = value.strip()
    return result


_logger = logging.getLogger(__name__)

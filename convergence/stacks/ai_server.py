# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Single Ubuntu host with local LLMs and monitoring.

Disk resize, Cockpit, Netdata, Ollama with models, Docker,
Open WebUI container and a Flask landing page.

Restarts are ordinary steps that depend on the steps producing
the restarted artifacts. A restart is done only if the unit is down
or its files changed after it started.

Package lists are refreshed right before every install: a host with
nothing to upgrade may still have stale or empty lists.
"""
import re
import string
from pathlib import Path
from typing import Mapping
from typing import Sequence

from convergence._changes import AptPackages
from convergence._changes import AptUpgraded
from convergence._changes import Container
from convergence._changes import DaemonReloaded
from convergence._changes import DockerSmokeTest
from convergence._changes import FileContent
from convergence._changes import FilesystemGrown
from convergence._changes import LogicalVolumeExtended
from convergence._changes import OllamaModel
from convergence._changes import PipPackages
from convergence._changes import RemoteFile
from convergence._changes import ScriptInstalled
from convergence._changes import TextReplaced
from convergence._changes import UnitEnabled
from convergence._changes import UnitRestarted
from convergence._changes import UserInGroup
from convergence._config import StackConfig
from convergence._facts import HostFacts
from convergence._host import Host
from convergence._step import Step

_here = Path(__file__).parent
config_path = _here / 'ai_server.ini'

_netdata_conf = '/etc/netdata/netdata.conf'
_ollama_unit = '/etc/systemd/system/ollama.service'
_landing_unit = '/etc/systemd/system/flask.service'


def build_steps(host: Host, config: StackConfig, facts: HostFacts) -> Sequence[Step]:
    landing_dir = config.get('landing_dir').rstrip('/')
    landing_app = f'{landing_dir}/app.py'
    ollama_server = f"{config.get('ollama_host')}:{config.get_int('ollama_port')}"
    docker_keyring = config.get('docker_keyring')
    docker_source = (
        f"deb [arch={facts.architecture} signed-by={docker_keyring}] "
        f"{config.get('docker_repository')} {facts.codename} stable\n")
    links = ';'.join(f'{name}={url}' for name, url in endpoints(config, facts).items())
    steps = [
        LogicalVolumeExtended(host, config.get('logical_volume')).as_step(
            'extend-volume'),
        FilesystemGrown(host, config.get('logical_volume')).as_step(
            'grow-filesystem', depends_on=['extend-volume']),
        RemoteFile(host, config.get('docker_key_url'), docker_keyring).as_step(
            'docker-apt-key', fatal=True, retries=2, retry_delay=5),
        AptUpgraded(host).as_step(
            'system-upgrade', fatal=True, retries=1, retry_delay=30),
        AptPackages(host, ['python3', 'python3-pip'], update=True).as_step(
            'python', fatal=True),
        PipPackages(host, ['flask']).as_step(
            'flask-package', fatal=True, retries=1, retry_delay=10, depends_on=['python']),
        AptPackages(host, ['cockpit'], update=True).as_step(
            'cockpit-package', fatal=True),
        UnitEnabled(host, 'cockpit.socket').as_step(
            'cockpit-socket', fatal=True, depends_on=['cockpit-package']),
        AptPackages(host, ['netdata'], update=True).as_step(
            'netdata-package', fatal=True),
        UnitEnabled(host, 'netdata').as_step(
            'netdata-service', fatal=True, depends_on=['netdata-package']),
        TextReplaced(host, _netdata_conf, 'bind socket to IP = 127.0.0.1', 'bind socket to IP = 0.0.0.0').as_step(
            'netdata-external-access', fatal=True, depends_on=['netdata-package']),
        ScriptInstalled(host, 'ollama', config.get('ollama_installer_url')).as_step(
            'ollama-install', fatal=True, retries=2, retry_delay=10),
        AptPackages(host, config.get_list('docker_prerequisites'), update=True).as_step(
            'docker-prerequisites', fatal=True),
        FileContent(host, '/etc/apt/sources.list.d/docker.list', docker_source.encode()).as_step(
            'docker-apt-source', fatal=True, depends_on=['docker-apt-key']),
        AptPackages(host, config.get_list('docker_packages'), update=True).as_step(
            'docker-packages', fatal=True, retries=1, retry_delay=30,
            depends_on=['docker-prerequisites', 'docker-apt-source']),
        DockerSmokeTest(host).as_step(
            'docker-smoke-test', depends_on=['docker-packages']),
        UserInGroup(host, facts.login_user, 'docker').as_step(
            'docker-group', depends_on=['docker-packages']),
        Container(
            host,
            'open-webui',
            config.get('webui_image'),
            ports=[f"{config.get_int('webui_port')}:8080"],
            add_hosts=[f"host.docker.internal:{config.get('ollama_host')}"],
            env={'OLLAMA_BASE_URL': f'http://host.docker.internal:{config.get_int("ollama_port")}'},
            volumes=['open-webui:/app/backend/data'],
            ).as_step(
            'open-webui', retries=2, retry_delay=30, depends_on=['docker-packages']),
        FileContent(host, _ollama_unit, _render('ollama.service', config).encode()).as_step(
            'ollama-unit-file', fatal=True, depends_on=['ollama-install']),
        DaemonReloaded(host, 'ollama.service').as_step(
            'ollama-daemon-reload', fatal=True, depends_on=['ollama-unit-file']),
        UnitEnabled(host, 'ollama.service').as_step(
            'ollama-service', fatal=True, depends_on=['ollama-daemon-reload']),
        UnitRestarted(host, 'ollama.service', [_ollama_unit]).as_step(
            'ollama-restart', fatal=True, depends_on=['ollama-service']),
        ]
    for model in config.get_list('ollama_models'):
        steps.append(OllamaModel(host, model, ollama_server).as_step(
            model_step_name(model), retries=2, retry_delay=30, depends_on=['ollama-restart']))
    steps.extend([
        PipPackages(host, config.get_list('python_packages')).as_step(
            'python-packages', retries=1, retry_delay=30, depends_on=['python']),
        FileContent(host, landing_app, (_here / 'landing_app.py').read_bytes(), mode='0755').as_step(
            'landing-app', fatal=True, depends_on=['flask-package']),
        FileContent(host, _landing_unit, _render('flask.service', config, landing_links=links).encode()).as_step(
            'landing-unit-file', fatal=True),
        DaemonReloaded(host, 'flask.service').as_step(
            'landing-daemon-reload', fatal=True, depends_on=['landing-unit-file']),
        UnitEnabled(host, 'flask.service').as_step(
            'landing-service', fatal=True, depends_on=['landing-app', 'landing-daemon-reload']),
        UnitRestarted(host, 'docker.service').as_step(
            'restart-docker', depends_on=['docker-packages']),
        UnitRestarted(host, 'cockpit.socket').as_step(
            'restart-cockpit', depends_on=['cockpit-socket']),
        UnitRestarted(host, 'netdata', [_netdata_conf]).as_step(
            'restart-netdata', depends_on=['netdata-service', 'netdata-external-access']),
        UnitRestarted(host, 'flask.service', [landing_app, _landing_unit]).as_step(
            'restart-landing', depends_on=['landing-service']),
        ])
    return steps


def endpoints(config: StackConfig, facts: HostFacts) -> Mapping[str, str]:
    ip = facts.server_ip
    return {
        'Netdata': f"http://{ip}:{config.get_int('netdata_port')}",
        'Open WebUI': f"http://{ip}:{config.get_int('webui_port')}",
        'Cockpit': f"http://{ip}:{config.get_int('cockpit_port')}",
        'Flask Web Application': f"http://{ip}:{config.get_int('landing_port')}",
        }


def model_step_name(model: str) -> str:
    """Make a step name usable as a config key.

    >>> model_step_name('mixtral:8x7b')
    'ollama-model-mixtral-8x7b'
    >>> model_step_name('llama3.2:3b')
    'ollama-model-llama3-2-3b'
    """
    return 'ollama-model-' + re.sub(r'[^a-z0-9]+', '-', model.lower()).strip('-')


def _render(template_name: str, config: StackConfig, **extra: str) -> str:
    template = string.Template((_here / template_name).read_text())
    values = {
        'ollama_host': config.get('ollama_host'),
        'ollama_port': config.get('ollama_port'),
        'landing_dir': config.get('landing_dir').rstrip('/'),
        'landing_port': config.get('landing_port'),
        **extra,
        }
    return template.substitute(values)

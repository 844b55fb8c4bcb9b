# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
from typing import Mapping
from typing import NamedTuple

from convergence._exceptions import ConfigurationError
from convergence._host import Host

_queries = {
    'server_ip': 'hostname -I',
    'architecture': 'dpkg --print-architecture',
    'codename': 'lsb_release -cs',
    'login_user': 'id -un',
    }


class HostFacts(NamedTuple):
    server_ip: str
    architecture: str
    codename: str
    login_user: str


def gather_facts(host: Host, known: Mapping[str, str]) -> HostFacts:
    """Query what is not known from config. Queries are read-only.

    >>> gather_facts(None, {
    ...     'server_ip': '10.0.0.5',
    ...     'architecture': 'amd64',
    ...     'codename': 'noble',
    ...     'login_user': 'admin',
    ...     })
    HostFacts(server_ip='10.0.0.5', architecture='amd64', codename='noble', login_user='admin')
    """
    facts = {}
    for name, command in _queries.items():
        value = known.get(name, '')
        if value:
            _logger.debug("%s: %s from config: %s", host, name, value)
        else:
            output = host.check_output(command).split()
            if not output:
                raise ConfigurationError(f"{host}: empty output of {command!r}; set {name} in config")
            # hostname -I lists all addresses. The first one is the primary.
            value = output[0]
            _logger.info("%s: %s: %s", host, name, value)
        facts[name] = value
    return HostFacts(**facts)


_logger = logging.getLogger(__name__)

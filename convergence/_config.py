# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import fnmatch
import logging
import re
from configparser import ConfigParser
from pathlib import Path
from typing import Mapping
from typing import Sequence

from convergence._exceptions import ConfigurationError
from convergence._step import Step

_logger = logging.getLogger(__name__)

user_config_path = Path('~/.config/convergence.ini').expanduser()


def read_config(host_name: str, *paths: Path) -> 'StackConfig':
    """Read and resolve overrides according to versions.

    Sections are host masks, e.g. "[gpu-??]" or "[*]".
    Optionally add ";v123" to sections like "[gpu-??;v45]".
    "[defaults]" matches any host. If not specified, "v0" is assumed.
    Higher versions override lower versions. Within a version,
    later files override earlier files.
    """
    config_parts = []
    for path_i, path in enumerate(paths):
        config_parser = ConfigParser(interpolation=None)
        if not config_parser.read(path):
            _logger.debug("Config %s: not found", path)
            continue
        sections = config_parser.sections()
        for section_i, section in enumerate(sections):
            mask, version = _parse_section_header(section)
            if fnmatch.fnmatch(host_name, mask):
                _logger.info("Config %s: section %s: read", path, section)
                items = config_parser.items(section)
                config_parts.append((version, path_i, section_i, items))
            else:
                _logger.debug("Config %s: section %s: skip", path, section)
    config_parts.sort(key=lambda part: part[:3])
    config = {}
    for _version, _path_i, _section_i, items in config_parts:
        config.update(items)
    return StackConfig(config)


def _parse_section_header(section):
    """Parse section name.

    >>> _parse_section_header('defaults')
    ('*', 0)
    >>> _parse_section_header('lab-ai??;v2')
    ('lab-ai??', 2)
    >>> _parse_section_header('lab-ai??;x2')
    Traceback (most recent call last):
    ...
    convergence._exceptions.ConfigurationError: Unknown x2 in lab-ai??;x2
    """
    if section == 'defaults':
        return '*', 0
    else:
        mask, semicolon, extra = section.partition(';')
        if not extra:
            return mask, 0
        elif extra.startswith('v'):
            try:
                return mask, int(extra[1:])
            except ValueError:
                raise ConfigurationError(f"Cannot parse {extra} in {section}")
        else:
            raise ConfigurationError(f"Unknown {extra} in {section}")


class StackConfig:
    """Flat key-value parameters of a stack with typed accessors."""

    _step_prefix = 'step.'
    _step_options = ('fatal', 'retries', 'retry_delay', 'depends_on', 'enabled')

    def __init__(self, values: Mapping[str, str]):
        self._values = dict(values)

    def __repr__(self):
        return f'<{self.__class__.__name__} with {len(self._values)} values>'

    def __contains__(self, key):
        return key in self._values

    def get(self, key: str) -> str:
        try:
            return self._values[key]
        except KeyError:
            raise ConfigurationError(f"Missing config value {key!r}")

    def get_optional(self, key: str) -> str:
        return self._values.get(key, '')

    def get_int(self, key: str) -> int:
        value = self.get(key)
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"Config value {key}={value!r} is not an integer")

    def get_list(self, key: str) -> Sequence[str]:
        return self.get(key).split()

    def get_bool(self, key: str) -> bool:
        return _parse_bool(key, self.get(key))

    def step_options(self, step_name: str) -> Mapping[str, object]:
        prefix = f'{self._step_prefix}{step_name}.'
        options = {}
        for key, value in self._values.items():
            if not key.startswith(prefix):
                continue
            option = key[len(prefix):]
            if option in ('fatal', 'enabled'):
                options[option] = _parse_bool(key, value)
            elif option == 'retries':
                try:
                    options[option] = int(value)
                except ValueError:
                    raise ConfigurationError(f"Config value {key}={value!r} is not an integer")
            elif option == 'retry_delay':
                options[option] = parse_duration(value)
            elif option == 'depends_on':
                options[option] = value.split()
            else:
                raise ConfigurationError(
                    f"Unknown step option {key!r}, expected one of {', '.join(self._step_options)}")
        return options

    def step_names(self):
        """Names of steps mentioned in config."""
        names = set()
        for key in self._values:
            if key.startswith(self._step_prefix):
                name, _, _ = key[len(self._step_prefix):].rpartition('.')
                names.add(name)
        return names

    def customize(self, steps: Sequence[Step]) -> Sequence[Step]:
        """Apply per-step options. Drop disabled steps."""
        known = {step.name for step in steps}
        unknown = self.step_names() - known
        if unknown:
            raise ConfigurationError(f"Options given for unknown steps: {', '.join(sorted(unknown))}")
        result = []
        for step in steps:
            options = dict(self.step_options(step.name))
            if not options.pop('enabled', True):
                _logger.info("Step %s: disabled in config", step.name)
                continue
            if options:
                _logger.debug("Step %s: options from config: %r", step.name, options)
                step = step.with_options(**options)
            result.append(step)
        return result


_duration_re = re.compile(r'(?P<number>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?')
_duration_units = {None: 1, 'ms': 0.001, 's': 1, 'm': 60, 'h': 3600}


def parse_duration(text: str) -> float:
    """Parse duration to seconds. Seconds are the default unit.

    >>> parse_duration('30')
    30.0
    >>> parse_duration('1.5s')
    1.5
    >>> parse_duration('2m')
    120.0
    >>> parse_duration('250ms')
    0.25
    >>> parse_duration('soon')
    Traceback (most recent call last):
    ...
    convergence._exceptions.ConfigurationError: Cannot parse duration 'soon'
    """
    m = _duration_re.fullmatch(text.strip())
    if m is None:
        raise ConfigurationError(f"Cannot parse duration {text!r}")
    return float(m['number']) * _duration_units[m['unit']]


def _parse_bool(key, value: str) -> bool:
    try:
        return ConfigParser.BOOLEAN_STATES[value.strip().lower()]
    except KeyError:
        raise ConfigurationError(f"Config value {key}={value!r} is not a boolean")

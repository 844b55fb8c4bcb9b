# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
from typing import Iterator
from typing import Sequence

from convergence._exceptions import ConfigurationError
from convergence._step import Step


class Plan:
    """Ordered steps for a single run.

    Dependencies may only point backwards, so cycles are impossible.
    Validation happens here, before anything touches the host.

    >>> Plan([Step('a', bool, print), Step('b', bool, print, depends_on=['a'])]).names()
    ['a', 'b']
    >>> Plan([Step('b', bool, print, depends_on=['a']), Step('a', bool, print)])
    Traceback (most recent call last):
    ...
    convergence._exceptions.ConfigurationError: Step 'b' depends on 'a' declared after it
    """

    def __init__(self, steps: Sequence[Step]):
        by_name = {}
        for step in steps:
            if step.name in by_name:
                raise ConfigurationError(f"Duplicate step name {step.name!r}")
            for dependency in sorted(step.depends_on):
                if dependency == step.name:
                    raise ConfigurationError(f"Step {step.name!r} depends on itself")
                if dependency not in by_name:
                    if any(later.name == dependency for later in steps):
                        raise ConfigurationError(
                            f"Step {step.name!r} depends on {dependency!r} declared after it")
                    raise ConfigurationError(
                        f"Step {step.name!r} depends on unknown step {dependency!r}")
            by_name[step.name] = step
        self._steps = tuple(steps)
        self._by_name = by_name

    def __repr__(self):
        return f'<{self.__class__.__name__} with {len(self._steps)} steps>'

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps)

    def __len__(self):
        return len(self._steps)

    def __getitem__(self, name: str) -> Step:
        return self._by_name[name]

    def names(self):
        return [step.name for step in self._steps]

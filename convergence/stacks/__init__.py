# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Target configurations of hosts.

A stack is a module with:
- config_path: bundled INI file with parameters and per-step options;
- build_steps(host, config, facts): ordered steps;
- endpoints(config, facts): service name to URL, reported after a run.

Variants of a stack are config sections, not code.
"""
from convergence.stacks import ai_server

stacks = {
    'ai_server': ai_server,
    }

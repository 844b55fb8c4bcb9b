# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import logging.handlers
import re
from pathlib import Path

default_log_dir = Path('~/.cache/convergence_logs').expanduser()


def init_logging(host_name: str, *, verbose: bool = False, log_dir: Path = default_log_dir) -> Path:
    logging.getLogger().setLevel(logging.DEBUG)
    log_file = log_dir / (re.sub(r'[^\w.@-]+', '_', host_name) + '.log')
    _init_file_logging(log_file)
    _init_stream_logging(logging.DEBUG if verbose else logging.INFO)
    return log_file


def _init_file_logging(log_file: Path):
    log_file.parent.mkdir(exist_ok=True, parents=True)
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=200 * 1024**2, backupCount=6)
    file_handler.setFormatter(logging.Formatter('%(asctime)s %(name)s %(levelname)s %(message)s'))
    file_handler.setLevel(logging.DEBUG)
    logging.getLogger().addHandler(file_handler)


def _init_stream_logging(level: int):
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s', '%H:%M:%S'))
    stream_handler.setLevel(level)
    logging.getLogger().addHandler(stream_handler)
    # Connection pool chatter of HTTP probes is useless on the console.
    logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)

# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
from typing import Mapping

import requests


def is_responding(url: str, timeout_sec: float = 5) -> bool:
    """Any HTTP response counts, even an error or a redirect."""
    try:
        response = requests.get(url, timeout=timeout_sec, allow_redirects=False)
    except requests.ConnectionError as e:
        _logger.debug("%s: cannot connect: %s", url, e)
        return False
    except requests.Timeout:
        _logger.debug("%s: timed out", url)
        return False
    _logger.debug("%s: HTTP %d", url, response.status_code)
    return True


def report_endpoints(endpoints: Mapping[str, str], *, probe: bool = True):
    lines = []
    for name, url in endpoints.items():
        if not probe:
            lines.append(f"{name} is available at: {url}")
        elif is_responding(url):
            lines.append(f"{name} is available at: {url} (responding)")
        else:
            lines.append(f"{name} is available at: {url} (NOT responding)")
    for line in lines:
        _logger.info("%s", line)
    return lines


_logger = logging.getLogger(__name__)

# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import json
import logging
import re
from pathlib import Path

from convergence._engine import EngineRun
from convergence._result import StepResult
from convergence._result import StepStatus

default_journal_dir = Path('~/.cache/convergence/runs').expanduser()

_levels = {
    StepStatus.SUCCESS: logging.INFO,
    StepStatus.SKIPPED: logging.INFO,
    StepStatus.FAILED: logging.WARNING,
    StepStatus.FATAL_FAILED: logging.ERROR,
    }


def log_result(result: StepResult):
    """Report a result as soon as it is produced."""
    _logger.log(_levels[result.status], "%s", result)


def run_record(run: EngineRun):
    counts = run.counts()
    return {
        'state': run.state.value,
        'abort_cause': run.abort_cause.value if run.abort_cause is not None else None,
        'started_at': run.started_at.isoformat(),
        'finished_at': run.finished_at.isoformat(),
        'counts': {status.value: counts[status] for status in StepStatus},
        'exit_code': run.exit_code().value,
        }


def write_journal(run: EngineRun, host_name: str, journal_dir: Path = default_journal_dir) -> Path:
    """Save results, one JSON object per line, for post-processing.

    The last line describes the run as a whole.
    """
    journal_dir.mkdir(parents=True, exist_ok=True)
    safe_name = re.sub(r'[^\w.@-]+', '_', host_name)
    path = journal_dir / f'{safe_name}-{run.started_at:%Y%m%d-%H%M%S-%f}.jsonl'
    with path.open('w') as f:
        for result in run.results():
            f.write(json.dumps({'result': result.as_json()}) + '\n')
        f.write(json.dumps({'run': run_record(run)}) + '\n')
    _logger.info("Journal saved: %s", path)
    return path


def read_journal(path: Path):
    """Load results and the run record from a journal file."""
    results = []
    record = None
    with path.open() as f:
        for line in f:
            entry = json.loads(line)
            if 'result' in entry:
                results.append(entry['result'])
            else:
                record = entry['run']
    return results, record


_logger = logging.getLogger(__name__)

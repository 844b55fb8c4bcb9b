# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
from datetime import datetime
from enum import Enum
from typing import NamedTuple


class StepStatus(Enum):
    SUCCESS = 'success'
    SKIPPED = 'skipped'
    FAILED = 'failed'
    FATAL_FAILED = 'fatal_failed'

    def is_failure(self) -> bool:
        return self in (StepStatus.FAILED, StepStatus.FATAL_FAILED)


class StepResult(NamedTuple):
    name: str
    status: StepStatus
    message: str
    attempted_at: datetime

    def __str__(self):
        return f"{self.name}: {self.status.value}: {self.message}"

    def as_json(self):
        return {
            'name': self.name,
            'status': self.status.value,
            'message': self.message,
            'attempted_at': self.attempted_at.isoformat(),
            }

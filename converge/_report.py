# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import json
from datetime import datetime
from enum import Enum
from typing import Any
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Sequence
from typing import Tuple


class Result(Enum):
    UNCHANGED = 'unchanged'
    CHANGED = 'changed'
    FAILED = 'failed'


class TaskOutcome(NamedTuple):

    task_name: str
    result: Result
    detail: str
    started_at: datetime
    ended_at: datetime

    @property
    def duration(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Mapping[str, Any]:
        return {
            'task_name': self.task_name,
            'result': self.result.value,
            'detail': self.detail,
            'duration': round(self.duration, 3),
            }


class RunStatus(Enum):
    SUCCESS = 'success'
    FAILED = 'failed'


class RunReport:
    """Outcomes in declared task order; tasks that never started are absent."""

    def __init__(self, outcomes: Sequence[TaskOutcome], cancelled=False, error: Optional[str] = None):
        self.outcomes: Tuple[TaskOutcome, ...] = tuple(outcomes)
        self.cancelled = cancelled
        self.error = error  # Run could not start at all.
        self.failed_task: Optional[str] = None
        for outcome in self.outcomes:
            if outcome.result == Result.FAILED:
                self.failed_task = outcome.task_name
                break
        if self.cancelled or self.error is not None or self.failed_task is not None:
            self.status = RunStatus.FAILED
        else:
            self.status = RunStatus.SUCCESS

    def __repr__(self):
        return f'<RunReport {self.status.value} {len(self.outcomes)} outcomes>'

    def outcome(self, task_name: str) -> Optional[TaskOutcome]:
        for outcome in self.outcomes:
            if outcome.task_name == task_name:
                return outcome
        return None

    def count(self, result: Result) -> int:
        return sum(1 for o in self.outcomes if o.result == result)

    def to_dict(self) -> Mapping[str, Any]:
        return {
            'status': self.status.value,
            'failed_task': self.failed_task,
            'cancelled': self.cancelled,
            'error': self.error,
            'outcomes': [o.to_dict() for o in self.outcomes],
            }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def format_text(self) -> str:
        width = max((len(o.task_name) for o in self.outcomes), default=4)
        lines = []
        for o in self.outcomes:
            lines.append(
                f'{o.task_name:<{width}}  {o.result.value:<9}  {o.duration:7.2f}s  {o.detail}')
        summary = (
            f'{self.status.value.upper()}: '
            f'{self.count(Result.CHANGED)} changed, '
            f'{self.count(Result.UNCHANGED)} unchanged, '
            f'{self.count(Result.FAILED)} failed')
        if self.failed_task is not None:
            summary += f'; first failed task: {self.failed_task}'
        if self.cancelled:
            summary += '; cancelled'
        if self.error is not None:
            summary += f'; {self.error}'
        lines.append(summary)
        return '\n'.join(lines)

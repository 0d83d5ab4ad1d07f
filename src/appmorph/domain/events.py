from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from appmorph.domain.models import now_ms


class EventType(str, Enum):
    PROGRESS = 'progress'
    COMPLETE = 'complete'
    ERROR = 'error'


TERMINAL_EVENT_TYPES = frozenset({EventType.COMPLETE.value, EventType.ERROR.value})


class AuditEventType(str, Enum):
    TASK_CREATED = 'task_created'
    TASK_COMPLETED = 'task_completed'
    PROMOTED = 'promoted'
    REVERTED = 'reverted'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text


@dataclass(frozen=True)
class TaskEvent:
    """One message on a task's broadcast channel."""

    task_id: str
    type: str
    data: dict

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES


@dataclass(frozen=True)
class AuditEvent:
    type: AuditEventType
    user_id: str
    details: dict = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

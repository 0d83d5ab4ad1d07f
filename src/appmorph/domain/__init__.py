from appmorph.domain.events import AuditEvent, AuditEventType, EventType, TaskEvent, normalize_event_type
from appmorph.domain.models import (
    AgentConstraints,
    AgentProgress,
    AgentResult,
    AgentRunContext,
    ChainEntry,
    ChainEntryStatus,
    DeployInfo,
    ProgressType,
    StageInfo,
    Task,
    TaskStatus,
    UserContext,
    can_transition,
)

__all__ = [
    'AgentConstraints',
    'AgentProgress',
    'AgentResult',
    'AgentRunContext',
    'AuditEvent',
    'AuditEventType',
    'ChainEntry',
    'ChainEntryStatus',
    'DeployInfo',
    'EventType',
    'ProgressType',
    'StageInfo',
    'Task',
    'TaskEvent',
    'TaskStatus',
    'UserContext',
    'can_transition',
    'normalize_event_type',
]

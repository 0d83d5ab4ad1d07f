from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import time

BRANCH_PREFIX_GROUP = 'appmorph/g/'
BRANCH_PREFIX_USER = 'appmorph/u/'
ANONYMOUS_USER_ID = 'anonymous'


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


class TaskStatus(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

_ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.FAILED},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, set())


class ChainEntryStatus(str, Enum):
    ACTIVE = 'active'
    ROLLED_BACK = 'rolled_back'


class ProgressType(str, Enum):
    LOG = 'log'
    THINKING = 'thinking'
    FILE_CHANGE = 'file_change'
    STDOUT = 'stdout'


def branch_for(*, user_id: str, group_id: str | None = None) -> str:
    if group_id:
        return f'{BRANCH_PREFIX_GROUP}{group_id}'
    return f'{BRANCH_PREFIX_USER}{user_id}'


@dataclass(frozen=True)
class UserContext:
    user_id: str
    group_ids: tuple[str, ...] = ()
    tenant_id: str | None = None
    roles: tuple[str, ...] = ()


@dataclass(frozen=True)
class StageInfo:
    session_id: str
    stage_path: str

    def to_payload(self) -> dict:
        return {'sessionId': self.session_id, 'stagePath': self.stage_path}


@dataclass(frozen=True)
class DeployInfo:
    session_id: str
    deploy_path: str
    deploy_url: str

    def to_payload(self) -> dict:
        return {
            'sessionId': self.session_id,
            'deployPath': self.deploy_path,
            'deployUrl': self.deploy_url,
        }


@dataclass(frozen=True)
class AgentConstraints:
    allowed_paths: tuple[str, ...] = ()
    blocked_paths: tuple[str, ...] = ()
    allowed_commands: tuple[str, ...] = ()
    blocked_commands: tuple[str, ...] = ()
    max_file_size: int | None = None
    max_total_changes: int | None = None


DEFAULT_CONSTRAINTS = AgentConstraints(
    allowed_paths=('**/*',),
    blocked_paths=('node_modules/**', '.git/**'),
)


@dataclass(frozen=True)
class AgentRunContext:
    prompt: str
    repo_path: str
    branch: str
    constraints: AgentConstraints
    instructions: str | None = None


@dataclass(frozen=True)
class AgentProgress:
    type: ProgressType
    content: str
    timestamp: int = field(default_factory=now_ms)

    def to_payload(self) -> dict:
        return {'type': self.type.value, 'content': self.content, 'timestamp': self.timestamp}


@dataclass
class AgentResult:
    success: bool
    summary: str
    files_changed: list[str] = field(default_factory=list)
    commit_sha: str | None = None
    stage_info: StageInfo | None = None
    deploy_info: DeployInfo | None = None
    build_output: str | None = None
    build_error: str | None = None

    def to_payload(self) -> dict:
        payload: dict = {
            'success': self.success,
            'summary': self.summary,
            'filesChanged': list(self.files_changed),
        }
        if self.commit_sha:
            payload['commitSha'] = self.commit_sha
        if self.stage_info is not None:
            payload['stageInfo'] = self.stage_info.to_payload()
        if self.deploy_info is not None:
            payload['deployInfo'] = self.deploy_info.to_payload()
        if self.build_error:
            payload['buildError'] = self.build_error
        return payload


@dataclass
class Task:
    id: str
    prompt: str
    user_id: str
    branch: str
    group_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    result: AgentResult | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_payload(self) -> dict:
        payload: dict = {
            'id': self.id,
            'prompt': self.prompt,
            'status': self.status.value,
            'userId': self.user_id,
            'branch': self.branch,
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
        }
        if self.group_id:
            payload['groupId'] = self.group_id
        if self.result is not None:
            payload['result'] = self.result.to_payload()
        if self.error:
            payload['error'] = self.error
        return payload


@dataclass(frozen=True)
class ChainEntry:
    session_id: str
    appmorph_user_id: str
    prompt: str
    created_at: str
    chain_position: int
    parent_session_id: str | None
    status: ChainEntryStatus = ChainEntryStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == ChainEntryStatus.ACTIVE

    def to_record(self) -> dict:
        return {
            'session_id': self.session_id,
            'appmorph_user_id': self.appmorph_user_id,
            'prompt': self.prompt,
            'created_at': self.created_at,
            'chain_position': self.chain_position,
            'parent_session_id': self.parent_session_id,
            'status': self.status.value,
        }

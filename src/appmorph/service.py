from __future__ import annotations

from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from threading import Lock
from uuid import uuid4

from appmorph.config import RESET_TO_ORIGINAL
from appmorph.deploy import DeployService
from appmorph.domain.events import AuditEvent, AuditEventType, EventType
from appmorph.domain.models import (
    AgentResult,
    ChainEntry,
    Task,
    TaskStatus,
    UserContext,
    branch_for,
    utc_now_iso,
)
from appmorph.errors import AuthorizationDenied, ChainBusyError, RollbackTargetInvalid
from appmorph.observability import get_logger
from appmorph.orchestrator import TaskOrchestrator
from appmorph.plugins import Action, HookRunner, RevertContext
from appmorph.registry import TaskRegistry
from appmorph.repository import ChainStore
from appmorph.staging import StagingService

_log = get_logger('appmorph.service')


@dataclass(frozen=True)
class RollbackOutcome:
    success: bool
    removed_sessions: list[str]
    current_session_id: str | None
    cleanup_failures: list[str] = field(default_factory=list)
    error: str | None = None

    def to_payload(self) -> dict:
        payload: dict = {
            'success': self.success,
            'removed_sessions': list(self.removed_sessions),
            'current_session_id': self.current_session_id,
        }
        if self.cleanup_failures:
            payload['cleanup_failures'] = list(self.cleanup_failures)
        if self.error:
            payload['error'] = self.error
        return payload


@dataclass(frozen=True)
class _QueuedTask:
    task_id: str
    user: UserContext | None
    future: Future


class ChainService:
    """Creates and runs chained tasks and keeps the ledger consistent.

    Each user's chain has a single writer. Tasks are queued per user and run
    one at a time; a running task holds the user's lock from head lookup
    until its entry is appended, and rollback takes the same lock.
    """

    def __init__(
        self,
        *,
        store: ChainStore,
        registry: TaskRegistry,
        orchestrator: TaskOrchestrator,
        staging: StagingService,
        deploy: DeployService,
        hooks: HookRunner,
        max_workers: int = 4,
        lock_timeout_seconds: float = 30,
    ):
        self.store = store
        self.registry = registry
        self.orchestrator = orchestrator
        self.staging = staging
        self.deploy = deploy
        self.hooks = hooks
        self.lock_timeout_seconds = max(0.0, float(lock_timeout_seconds))
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix='appmorph-task')
        self._futures: dict[str, Future] = {}
        self._guard = Lock()
        self._user_locks: dict[str, Lock] = {}
        self._user_queues: dict[str, deque[_QueuedTask]] = {}

    def _user_lock(self, user_id: str) -> Lock:
        with self._guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = Lock()
                self._user_locks[user_id] = lock
            return lock

    def _require_allowed(self, action: Action, user: UserContext) -> None:
        decision = self.hooks.authorize(action, user)
        if not decision.allowed:
            raise AuthorizationDenied(decision.reason or f'{action.type} denied')

    def create_task(self, *, prompt: str, user: UserContext, group_id: str | None = None) -> Task:
        text = str(prompt or '').strip()
        if not text:
            raise ValueError('prompt is required')
        group = str(group_id or '').strip() or None
        self._require_allowed(Action(type='create_task', group_id=group), user)

        task = Task(
            id=str(uuid4()),
            prompt=text,
            user_id=user.user_id,
            group_id=group,
            branch=branch_for(user_id=user.user_id, group_id=group),
        )
        self.registry.register(task)
        self.hooks.audit(
            AuditEvent(
                type=AuditEventType.TASK_CREATED,
                user_id=user.user_id,
                details={'task_id': task.id, 'branch': task.branch, 'group_id': group},
            )
        )
        _log.info('task created task_id=%s user=%s branch=%s', task.id, user.user_id, task.branch)
        return task

    def submit(self, task_id: str, *, user: UserContext | None = None) -> Future:
        """Queue *task_id* behind its user's earlier tasks.

        A user has at most one task on the pool at a time; the next one is
        dispatched when the previous finishes, so a long queue for one user
        never occupies workers other users need.
        """
        task = self.registry.require(task_id)
        with self._guard:
            if task_id in self._futures:
                return self._futures[task_id]
            self._prune_futures()
            future: Future = Future()
            self._futures[task_id] = future
            pending = self._user_queues.setdefault(task.user_id, deque())
            pending.append(_QueuedTask(task_id=task.id, user=user, future=future))
            dispatch = len(pending) == 1
        if dispatch:
            self._dispatch(task.user_id)
        return future

    def _prune_futures(self) -> None:
        stale = [
            task_id
            for task_id, future in self._futures.items()
            if future.done() and self.registry.get(task_id) is None
        ]
        for task_id in stale:
            del self._futures[task_id]

    def _dispatch(self, user_id: str) -> None:
        try:
            self._executor.submit(self._run_queue_head, user_id)
        except RuntimeError as exc:
            self._fail_queue(user_id, exc)

    def _run_queue_head(self, user_id: str) -> None:
        with self._guard:
            item = self._user_queues[user_id][0]
        try:
            if item.future.set_running_or_notify_cancel():
                try:
                    result = self.run_task(item.task_id, user=item.user)
                except BaseException as exc:
                    item.future.set_exception(exc)
                else:
                    item.future.set_result(result)
            else:
                self._fail_unstarted(item.task_id, 'Task cancelled')
        finally:
            with self._guard:
                pending = self._user_queues[user_id]
                pending.popleft()
                if not pending:
                    del self._user_queues[user_id]
                dispatch = bool(pending)
            if dispatch:
                self._dispatch(user_id)

    def _fail_queue(self, user_id: str, exc: Exception) -> None:
        with self._guard:
            pending = self._user_queues.pop(user_id, deque())
        _log.error('task dispatch failed user=%s queued=%s error=%s', user_id, len(pending), exc)
        for item in pending:
            self._fail_unstarted(item.task_id, f'Task could not be scheduled: {exc}')
            if not item.future.done():
                item.future.set_exception(exc)

    def _fail_unstarted(self, task_id: str, message: str) -> None:
        task = self.registry.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return
        self.registry.transition(task_id, TaskStatus.FAILED, error=message)
        self.registry.publish(task_id, EventType.ERROR, {'message': message})

    def run_task(self, task_id: str, *, user: UserContext | None = None) -> AgentResult:
        task = self.registry.require(task_id)
        with self._user_lock(task.user_id):
            head = self.store.get_head(task.user_id)
            parent_session_id = head.session_id if head is not None else None
            position = head.chain_position + 1 if head is not None else 0

            def _record(finished: Task, result: AgentResult) -> None:
                self._record_outcome(finished, result, parent_session_id=parent_session_id, position=position)

            return self.orchestrator.execute(task, parent_session_id, user=user, on_finished=_record)

    def wait(self, task_id: str, timeout: float | None = None) -> Task:
        with self._guard:
            future = self._futures.get(task_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.registry.require(task_id)

    def _record_outcome(self, task: Task, result: AgentResult, *, parent_session_id: str | None, position: int) -> None:
        if not result.success:
            self._discard_artifacts(task.id)
            result.stage_info = None
            result.deploy_info = None
            return
        entry = ChainEntry(
            session_id=task.id,
            appmorph_user_id=task.user_id,
            prompt=task.prompt,
            created_at=utc_now_iso(),
            chain_position=position,
            parent_session_id=parent_session_id,
        )
        try:
            self.store.add_entry(entry)
        except Exception:
            self._discard_artifacts(task.id)
            result.stage_info = None
            raise
        _log.info('chain entry added session=%s position=%s parent=%s', task.id, position, parent_session_id)

    def _discard_artifacts(self, session_id: str) -> list[str]:
        failures: list[str] = []
        for cleanup in (self.staging.cleanup_stage, self.deploy.cleanup_deploy):
            try:
                cleanup(session_id)
            except Exception:
                _log.exception('artifact cleanup failed session=%s step=%s', session_id, cleanup.__name__)
                failures.append(session_id)
        return failures

    def get_task(self, task_id: str) -> Task | None:
        return self.registry.get(task_id)

    def list_tasks(self, *, user_id: str | None = None) -> list[Task]:
        return self.registry.list(user_id=user_id)

    def abort(self, task_id: str) -> bool:
        aborted = self.registry.request_abort(task_id)
        if aborted:
            _log.info('abort requested task_id=%s', task_id)
        return aborted

    def get_chain(self, user_id: str) -> list[ChainEntry]:
        return self.store.get_chain(user_id)

    def get_head(self, user_id: str) -> ChainEntry | None:
        return self.store.get_head(user_id)

    def rollback(self, user: UserContext, target_session_id: str) -> RollbackOutcome:
        self._require_allowed(Action(type='rollback'), user)
        lock = self._user_lock(user.user_id)
        if not lock.acquire(timeout=self.lock_timeout_seconds):
            raise ChainBusyError(f'chain for {user.user_id} is busy, retry later')
        try:
            return self._rollback_locked(user, target_session_id)
        finally:
            lock.release()

    def _rollback_locked(self, user: UserContext, target_session_id: str) -> RollbackOutcome:
        previous_head = self.store.get_head(user.user_id)
        if target_session_id == RESET_TO_ORIGINAL:
            target_position = -1
            current_session_id = None
        else:
            target = self.store.get_entry(target_session_id)
            if target is None or target.appmorph_user_id != user.user_id:
                raise RollbackTargetInvalid('Target session not found or access denied')
            if not target.is_active:
                raise RollbackTargetInvalid('Target session is not active')
            target_position = target.chain_position
            current_session_id = target.session_id

        rolled_back = self.store.rollback_to_position(user.user_id, target_position)
        removed = [entry.session_id for entry in rolled_back]
        failures: list[str] = []
        for session_id in removed:
            failures.extend(self._discard_artifacts(session_id))
        self.store.delete_rolled_back(user.user_id)
        _log.info(
            'chain rolled back user=%s target=%s removed=%s failures=%s',
            user.user_id,
            target_session_id,
            len(removed),
            len(failures),
        )

        self.hooks.on_revert(
            RevertContext(
                user=user,
                from_session_id=previous_head.session_id if previous_head is not None else None,
                to_session_id=current_session_id,
                removed_sessions=tuple(removed),
            )
        )
        self.hooks.audit(
            AuditEvent(
                type=AuditEventType.REVERTED,
                user_id=user.user_id,
                details={'target_session_id': target_session_id, 'removed_sessions': removed},
            )
        )
        return RollbackOutcome(
            success=True,
            removed_sessions=removed,
            current_session_id=current_session_id,
            cleanup_failures=sorted(set(failures)),
        )

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

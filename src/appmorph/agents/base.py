from __future__ import annotations

from abc import ABC, abstractmethod
from contextvars import copy_context
from fnmatch import fnmatch
import hashlib
from pathlib import Path
from queue import Queue
from threading import Event, Lock, Thread
from typing import Iterator

from appmorph.domain.models import AgentConstraints, AgentProgress, AgentResult, AgentRunContext, ProgressType
from appmorph.errors import AgentError
from appmorph.observability import get_logger

_log = get_logger('appmorph.agents')

_CLOSED = object()


class AgentStream:
    """Progress channel between one agent run and its consumer.

    The producer calls :meth:`emit` any number of times and then exactly one of
    :meth:`finish` or :meth:`fail`. The consumer iterates progress until the
    closed marker and then reads :meth:`result`.
    """

    def __init__(self, *, abort_event: Event | None = None):
        self._queue: Queue = Queue()
        self._lock = Lock()
        self._done = Event()
        self._result: AgentResult | None = None
        self._error: BaseException | None = None
        self.abort_event = abort_event or Event()

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    @property
    def closed(self) -> bool:
        return self._done.is_set()

    def emit(self, progress_type: ProgressType, content: str) -> AgentProgress | None:
        progress = AgentProgress(type=progress_type, content=str(content))
        with self._lock:
            if self._done.is_set():
                return None
            self._queue.put(progress)
        return progress

    def finish(self, result: AgentResult) -> None:
        self._close(result=result, error=None)

    def fail(self, error: BaseException) -> None:
        self._close(result=None, error=error)

    def _close(self, *, result: AgentResult | None, error: BaseException | None) -> None:
        with self._lock:
            if self._done.is_set():
                return
            self._result = result
            self._error = error
            self._done.set()
            self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[AgentProgress]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def result(self, timeout: float | None = None) -> AgentResult:
        if not self._done.wait(timeout):
            raise AgentError('agent did not finish in time')
        if self._error is not None:
            if isinstance(self._error, AgentError):
                raise self._error
            raise AgentError(str(self._error) or self._error.__class__.__name__) from self._error
        if self._result is None:
            raise AgentError('Agent did not return a result')
        return self._result


class Agent(ABC):
    name = 'agent'

    @abstractmethod
    def run(self, context: AgentRunContext, stream: AgentStream) -> AgentResult | None:
        """Do the work, emitting progress into *stream*.

        Returning a result finishes the stream; an agent may also call
        ``stream.finish`` itself and return ``None``.
        """


def start_agent(agent: Agent, context: AgentRunContext, *, abort_event: Event | None = None) -> AgentStream:
    """Run *agent* on a worker thread and return the stream it feeds."""
    stream = AgentStream(abort_event=abort_event)

    def _worker() -> None:
        try:
            result = agent.run(context, stream)
        except Exception as exc:
            _log.exception('agent raised agent=%s', agent.name)
            stream.fail(exc)
            return
        if result is not None:
            stream.finish(result)
        elif not stream.closed:
            stream.fail(AgentError('Agent did not return a result'))

    # The copied context carries the task log fields onto the agent thread.
    context_snapshot = copy_context()
    Thread(target=context_snapshot.run, args=(_worker,), name=f'agent-{agent.name}', daemon=True).start()
    return stream


def is_blocked(rel_path: str, constraints: AgentConstraints) -> bool:
    normalized = rel_path.replace('\\', '/').lstrip('/')
    return any(fnmatch(normalized, pattern) for pattern in constraints.blocked_paths)


def snapshot_tree(root: Path, constraints: AgentConstraints) -> dict[str, str]:
    """Content digests of every file under *root* not matched by a blocked pattern."""
    base = Path(root)
    manifest: dict[str, str] = {}
    for path in base.rglob('*'):
        if not path.is_file():
            continue
        rel = path.relative_to(base).as_posix()
        if is_blocked(rel, constraints):
            continue
        try:
            manifest[rel] = hashlib.sha256(path.read_bytes()).hexdigest()
        except OSError:
            continue
    return manifest


def diff_snapshots(before: dict[str, str], after: dict[str, str]) -> list[str]:
    changed = {path for path, digest in after.items() if before.get(path) != digest}
    changed.update(path for path in before if path not in after)
    return sorted(changed)


def constraint_violation(root: Path, files_changed: list[str], constraints: AgentConstraints) -> str | None:
    if constraints.max_total_changes is not None and len(files_changed) > constraints.max_total_changes:
        return f'{len(files_changed)} files changed, limit is {constraints.max_total_changes}'
    if constraints.max_file_size is not None:
        for rel in files_changed:
            path = Path(root) / rel
            if path.is_file() and path.stat().st_size > constraints.max_file_size:
                return f'{rel} exceeds max_file_size={constraints.max_file_size}'
    return None

from __future__ import annotations

from collections import deque
from queue import Queue
from threading import Event, Lock
from typing import Iterator

from appmorph.domain.events import EventType, TaskEvent, normalize_event_type
from appmorph.domain.models import Task, TaskStatus, can_transition, now_ms

_CLOSED = object()


class Subscription:
    """A subscriber's view of one task channel.

    Events arrive in publish order; iteration ends after the terminal event.
    """

    def __init__(self, channel: 'TaskChannel'):
        self._channel = channel
        self._queue: Queue = Queue()
        self.closed = False

    def _push(self, item) -> None:
        self._queue.put(item)

    def get(self, timeout: float | None = None) -> TaskEvent | None:
        """Next event, ``None`` once the channel closed. Raises ``queue.Empty`` on timeout."""
        if self.closed:
            return None
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            self.closed = True
            return None
        return item

    def __iter__(self) -> Iterator[TaskEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        self._channel.unsubscribe(self)
        self.closed = True


class TaskChannel:
    def __init__(self, task_id: str):
        self.task_id = task_id
        self._lock = Lock()
        self._subscribers: list[Subscription] = []
        self.terminal: TaskEvent | None = None

    def publish(self, event: TaskEvent) -> bool:
        with self._lock:
            if self.terminal is not None:
                return False
            subscribers = list(self._subscribers)
            if event.is_terminal:
                self.terminal = event
                self._subscribers.clear()
            for sub in subscribers:
                sub._push(event)
                if event.is_terminal:
                    sub._push(_CLOSED)
        return True

    def subscribe(self, *, synthesized_terminal: TaskEvent | None = None) -> Subscription:
        sub = Subscription(self)
        with self._lock:
            terminal = self.terminal or synthesized_terminal
            if terminal is None:
                self._subscribers.append(sub)
                return sub
        sub._push(terminal)
        sub._push(_CLOSED)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


class TaskRegistry:
    """Process-local index of tasks, their channels and abort flags.

    Once a task's terminal event is published it counts as finished. Only the
    newest *max_finished* finished tasks are kept; older ones are forgotten
    together with their channel and abort flag.
    """

    def __init__(self, *, max_finished: int = 1000):
        self.max_finished = max(1, int(max_finished))
        self._lock = Lock()
        self._tasks: dict[str, Task] = {}
        self._channels: dict[str, TaskChannel] = {}
        self._abort_flags: dict[str, Event] = {}
        self._finished: deque[str] = deque()

    def register(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise ValueError(f'task already registered: {task.id}')
            self._tasks[task.id] = task
            self._channels[task.id] = TaskChannel(task.id)
            self._abort_flags[task.id] = Event()
        return task

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            return self._tasks.get(task_id)

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise KeyError(task_id)
        return task

    def list(self, *, user_id: str | None = None) -> list[Task]:
        with self._lock:
            tasks = list(self._tasks.values())
        if user_id is not None:
            tasks = [task for task in tasks if task.user_id == user_id]
        return sorted(tasks, key=lambda task: task.created_at, reverse=True)

    def transition(self, task_id: str, status: TaskStatus, **changes) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(task_id)
            if task.status != status and not can_transition(task.status, status):
                raise ValueError(f'invalid transition {task.status.value} -> {status.value} task={task_id}')
            task.status = status
            for key, value in changes.items():
                setattr(task, key, value)
            task.updated_at = now_ms()
            return task

    def _evict_finished(self) -> None:
        while len(self._finished) > self.max_finished:
            stale = self._finished.popleft()
            self._tasks.pop(stale, None)
            self._channels.pop(stale, None)
            self._abort_flags.pop(stale, None)

    def channel(self, task_id: str) -> TaskChannel:
        with self._lock:
            channel = self._channels.get(task_id)
        if channel is None:
            raise KeyError(task_id)
        return channel

    def publish(self, task_id: str, event_type: EventType | str, data: dict) -> bool:
        event = TaskEvent(task_id=task_id, type=normalize_event_type(event_type), data=data)
        published = self.channel(task_id).publish(event)
        if published and event.is_terminal:
            with self._lock:
                self._finished.append(task_id)
                self._evict_finished()
        return published

    def subscribe(self, task_id: str) -> Subscription:
        task = self.require(task_id)
        return self.channel(task_id).subscribe(synthesized_terminal=self._terminal_event_for(task))

    def request_abort(self, task_id: str) -> bool:
        task = self.require(task_id)
        if task.is_terminal:
            return False
        with self._lock:
            flag = self._abort_flags[task_id]
        flag.set()
        return True

    def abort_flag(self, task_id: str) -> Event:
        with self._lock:
            flag = self._abort_flags.get(task_id)
        if flag is None:
            raise KeyError(task_id)
        return flag

    @staticmethod
    def _terminal_event_for(task: Task) -> TaskEvent | None:
        if not task.is_terminal:
            return None
        if task.result is not None:
            return TaskEvent(task_id=task.id, type=EventType.COMPLETE.value, data=task.result.to_payload())
        return TaskEvent(
            task_id=task.id,
            type=EventType.ERROR.value,
            data={'message': task.error or 'Task failed'},
        )

from __future__ import annotations

from queue import Empty
import threading

import pytest

from appmorph.domain.events import EventType
from appmorph.domain.models import AgentResult, Task, TaskStatus
from appmorph.registry import TaskRegistry


def _registry_with_task(task_id: str = 't1', *, user_id: str = 'alice', created_at: int | None = None) -> TaskRegistry:
    registry = TaskRegistry()
    task = Task(id=task_id, prompt='p', user_id=user_id, branch=f'appmorph/u/{user_id}')
    if created_at is not None:
        task.created_at = created_at
    registry.register(task)
    return registry


def test_live_subscriber_receives_events_in_order_then_closes():
    registry = _registry_with_task()
    sub = registry.subscribe('t1')

    registry.publish('t1', EventType.PROGRESS, {'content': 'one'})
    registry.publish('t1', EventType.PROGRESS, {'content': 'two'})
    registry.publish('t1', EventType.COMPLETE, {'success': True})

    events = list(sub)
    assert [event.type for event in events] == ['progress', 'progress', 'complete']
    assert [event.data.get('content') for event in events[:2]] == ['one', 'two']
    assert registry.channel('t1').subscriber_count == 0


def test_events_after_terminal_are_dropped():
    registry = _registry_with_task()
    sub = registry.subscribe('t1')

    assert registry.publish('t1', EventType.ERROR, {'message': 'boom'}) is True
    assert registry.publish('t1', EventType.PROGRESS, {'content': 'late'}) is False

    assert [event.type for event in sub] == ['error']


def test_late_subscriber_gets_synthesized_complete_from_result():
    registry = _registry_with_task()
    registry.transition('t1', TaskStatus.RUNNING)
    registry.transition('t1', TaskStatus.FAILED, result=AgentResult(success=False, summary='nothing to do'))

    events = list(registry.subscribe('t1'))

    assert len(events) == 1
    assert events[0].type == 'complete'
    assert events[0].data['success'] is False
    assert events[0].data['summary'] == 'nothing to do'


def test_late_subscriber_gets_error_when_no_result():
    registry = _registry_with_task()
    registry.transition('t1', TaskStatus.FAILED, error='agent crashed')

    events = list(registry.subscribe('t1'))

    assert [(event.type, event.data) for event in events] == [('error', {'message': 'agent crashed'})]


def test_subscription_get_times_out_and_returns_none_after_close():
    registry = _registry_with_task()
    sub = registry.subscribe('t1')

    with pytest.raises(Empty):
        sub.get(timeout=0.01)

    sub.close()
    assert sub.get(timeout=0.01) is None
    assert registry.channel('t1').subscriber_count == 0


def test_subscriber_on_other_thread_sees_terminal():
    registry = _registry_with_task()
    sub = registry.subscribe('t1')
    seen: list[str] = []

    def consume() -> None:
        seen.extend(event.type for event in sub)

    worker = threading.Thread(target=consume)
    worker.start()
    registry.publish('t1', EventType.PROGRESS, {'content': 'x'})
    registry.publish('t1', EventType.COMPLETE, {'success': True})
    worker.join(timeout=5)

    assert seen == ['progress', 'complete']


def test_transition_rules():
    registry = _registry_with_task()

    with pytest.raises(ValueError):
        registry.transition('t1', TaskStatus.COMPLETED)

    registry.transition('t1', TaskStatus.RUNNING)
    task = registry.transition('t1', TaskStatus.COMPLETED)
    assert task.is_terminal

    with pytest.raises(ValueError):
        registry.transition('t1', TaskStatus.RUNNING)
    with pytest.raises(KeyError):
        registry.transition('nope', TaskStatus.RUNNING)


def test_request_abort_only_for_live_tasks():
    registry = _registry_with_task()

    assert registry.request_abort('t1') is True
    assert registry.abort_flag('t1').is_set()

    registry.transition('t1', TaskStatus.FAILED, error='x')
    assert registry.request_abort('t1') is False


def test_list_is_newest_first_and_filterable():
    registry = _registry_with_task('old', created_at=1)
    registry.register(Task(id='new', prompt='p', user_id='bob', branch='appmorph/u/bob', created_at=2))

    assert [task.id for task in registry.list()] == ['new', 'old']
    assert [task.id for task in registry.list(user_id='alice')] == ['old']


def test_register_rejects_duplicates_and_require_raises():
    registry = _registry_with_task()
    with pytest.raises(ValueError):
        registry.register(Task(id='t1', prompt='p', user_id='x', branch='b'))
    with pytest.raises(KeyError):
        registry.require('missing')


def test_registry_forgets_oldest_finished_tasks_beyond_retention():
    registry = TaskRegistry(max_finished=2)
    for task_id in ('t1', 't2', 't3', 'live'):
        registry.register(Task(id=task_id, prompt='p', user_id='alice', branch='appmorph/u/alice'))
        if task_id != 'live':
            registry.transition(task_id, TaskStatus.RUNNING)
            registry.transition(task_id, TaskStatus.FAILED, error='stopped')

    registry.publish('t1', EventType.ERROR, {'message': 'stopped'})
    registry.publish('t2', EventType.ERROR, {'message': 'stopped'})
    assert registry.get('t1') is not None

    registry.publish('t3', EventType.ERROR, {'message': 'stopped'})

    assert registry.get('t1') is None
    with pytest.raises(KeyError):
        registry.channel('t1')
    with pytest.raises(KeyError):
        registry.abort_flag('t1')
    assert {task.id for task in registry.list()} == {'t2', 't3', 'live'}
    assert registry.publish('t3', EventType.ERROR, {'message': 'again'}) is False
    assert registry.get('t2') is not None

from __future__ import annotations

import json
from pathlib import Path

from fastapi.testclient import TestClient

from appmorph.agents import ScriptedAgent, ScriptedStep
from appmorph.api import create_app
from appmorph.build import BuildService
from appmorph.config import RESET_TO_ORIGINAL, USER_ID_COOKIE
from appmorph.deploy import DeployService
from appmorph.domain.models import UserContext
from appmorph.orchestrator import TaskOrchestrator
from appmorph.plugins import AuthDecision, HookRunner, Plugin, PluginLoader
from appmorph.registry import TaskRegistry
from appmorph.repository import InMemoryChainStore
from appmorph.service import ChainService
from appmorph.staging import StagingService

ALICE = {'x-appmorph-user-id': 'alice'}
BOB = {'x-appmorph-user-id': 'bob'}


def build_client(tmp_path: Path, *, plugins: tuple[Plugin, ...] = ()) -> TestClient:
    source = tmp_path / 'app'
    source.mkdir(exist_ok=True)
    (source / 'index.html').write_text('<h1>v0</h1>', encoding='utf-8')
    loader = PluginLoader()
    for plugin in plugins:
        loader.register(plugin)
    hooks = HookRunner(loader)
    registry = TaskRegistry()
    staging = StagingService(source_location=source, stage_root=tmp_path / 'stage', workspace_root=None)
    deploy = DeployService(deploy_root=tmp_path / 'deploy', public_url='http://localhost:3003')
    agent = ScriptedAgent([
        ScriptedStep(prompt_match='blue', file_changes={'index.html': '<h1>blue</h1>'}, summary='blue now'),
        ScriptedStep(prompt_match='red', file_changes={'index.html': '<h1>red</h1>'}, summary='red now'),
        ScriptedStep(prompt_match='nope', success=False, summary='cannot'),
    ])
    orchestrator = TaskOrchestrator(
        registry=registry,
        staging=staging,
        build=BuildService(
            build_command='cp index.html <dist>/index.html',
            deploy=deploy,
            install_command=None,
            timeout_seconds=30,
        ),
        deploy=deploy,
        hooks=hooks,
        agent_factory=lambda: agent,
    )
    service = ChainService(
        store=InMemoryChainStore(),
        registry=registry,
        orchestrator=orchestrator,
        staging=staging,
        deploy=deploy,
        hooks=hooks,
        lock_timeout_seconds=5,
    )
    return TestClient(create_app(service=service, keepalive_seconds=0.5))


def _service(client: TestClient) -> ChainService:
    return client.app.state.container.service


def _create(client: TestClient, prompt: str, headers=ALICE) -> str:
    resp = client.post('/api/task', json={'prompt': prompt}, headers=headers)
    assert resp.status_code == 200
    task_id = resp.json()['taskId']
    _service(client).wait(task_id, timeout=30)
    return task_id


def _sse_events(client: TestClient, task_id: str, headers=ALICE) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []
    name = ''
    with client.stream('GET', f'/api/task/{task_id}/stream', headers=headers) as resp:
        assert resp.status_code == 200
        assert resp.headers['content-type'].startswith('text/event-stream')
        for line in resp.iter_lines():
            if line.startswith('event:'):
                name = line[len('event:'):].strip()
            elif line.startswith('data:'):
                events.append((name, json.loads(line[len('data:'):])))
    return events


def test_health(tmp_path: Path):
    client = build_client(tmp_path)
    assert client.get('/health').json() == {'status': 'ok'}


def test_create_task_returns_id_and_branch(tmp_path: Path):
    client = build_client(tmp_path)

    resp = client.post('/api/task', json={'prompt': 'make it blue', 'groupId': 'team'}, headers=ALICE)

    assert resp.status_code == 200
    body = resp.json()
    assert body['branch'] == 'appmorph/g/team'
    task = _service(client).wait(body['taskId'], timeout=30)
    assert task.user_id == 'alice'


def test_create_task_validation_errors(tmp_path: Path):
    client = build_client(tmp_path)

    missing = client.post('/api/task', json={}, headers=ALICE)
    blank = client.post('/api/task', json={'prompt': '   '}, headers=ALICE)

    assert missing.status_code == 400
    assert missing.json()['code'] == 'validation_error'
    assert missing.json()['field'] == 'prompt'
    assert blank.status_code == 400


def test_get_task_after_completion(tmp_path: Path):
    client = build_client(tmp_path)
    task_id = _create(client, 'make it blue')

    resp = client.get(f'/api/task/{task_id}', headers=ALICE)

    assert resp.status_code == 200
    task = resp.json()['task']
    assert task['status'] == 'completed'
    assert task['result']['summary'] == 'blue now'
    assert task['result']['deployInfo']['deployUrl'].endswith(f'/__appmorph/select/{task_id}')
    assert client.get('/api/task/missing', headers=ALICE).status_code == 404


def test_stream_of_finished_task_replays_terminal_event(tmp_path: Path):
    client = build_client(tmp_path)
    task_id = _create(client, 'make it blue')

    events = _sse_events(client, task_id)

    assert events[0][0] == 'progress'
    assert events[0][1]['content'] == f'Connected to task {task_id} (status: completed)'
    assert events[-1][0] == 'complete'
    assert events[-1][1]['success'] is True
    assert len(events) == 2


def test_stream_of_failed_agent_still_completes(tmp_path: Path):
    client = build_client(tmp_path)
    task_id = _create(client, 'nope')

    events = _sse_events(client, task_id)

    assert events[-1][0] == 'complete'
    assert events[-1][1]['success'] is False
    assert events[-1][1]['summary'] == 'cannot'


def test_list_tasks_and_abort(tmp_path: Path):
    client = build_client(tmp_path)
    task_id = _create(client, 'make it blue')

    listing = client.get('/api/tasks', headers=ALICE).json()['tasks']
    abort = client.post(f'/api/task/{task_id}/abort', headers=ALICE).json()

    assert [item['id'] for item in listing] == [task_id]
    assert listing[0]['status'] == 'completed'
    assert abort == {'taskId': task_id, 'aborted': False}


def test_chain_and_rollback_flow(tmp_path: Path):
    client = build_client(tmp_path)
    first = _create(client, 'make it blue')
    second = _create(client, 'make it red')
    _create(client, 'make it blue', headers=BOB)

    chain = client.get('/api/chain', headers=ALICE).json()
    assert chain['user_id'] == 'alice'
    assert [item['session_id'] for item in chain['chain']] == [first, second]
    assert [item['is_current'] for item in chain['chain']] == [False, True]
    assert chain['current_session_id'] == second

    resp = client.post('/api/chain/rollback', json={'target_session_id': first}, headers=ALICE)
    assert resp.status_code == 200
    assert resp.json() == {
        'success': True,
        'removed_sessions': [second],
        'current_session_id': first,
        'cleanup_failures': [],
        'error': None,
    }

    reset = client.post('/api/chain/rollback', json={'target_session_id': RESET_TO_ORIGINAL}, headers=ALICE)
    assert reset.json()['removed_sessions'] == [first]
    assert client.get('/api/chain', headers=ALICE).json()['chain'] == []
    assert len(client.get('/api/chain', headers=BOB).json()['chain']) == 1


def test_rollback_to_foreign_session_is_404(tmp_path: Path):
    client = build_client(tmp_path)
    theirs = _create(client, 'make it blue', headers=BOB)

    resp = client.post('/api/chain/rollback', json={'target_session_id': theirs}, headers=ALICE)

    assert resp.status_code == 404
    assert resp.json()['success'] is False
    assert resp.json()['error'] == 'Target session not found or access denied'


def test_user_id_from_cookie_and_anonymous_default(tmp_path: Path):
    client = build_client(tmp_path)
    client.cookies.set(USER_ID_COOKIE, 'carol')

    _create(client, 'make it blue', headers={})

    assert client.get('/api/chain').json()['user_id'] == 'carol'
    client.cookies.clear()
    assert client.get('/api/chain').json()['user_id'] == 'anonymous'


def test_plugins_resolve_users_and_deny_actions(tmp_path: Path):
    class Gatekeeper(Plugin):
        def resolve_user_context(self, request):
            token = request.headers.get('authorization')
            return UserContext(user_id=token.split()[-1]) if token else None

        def authorize(self, action, user):
            if action.type == 'view_task' and user.user_id == 'mallory':
                return AuthDecision(allowed=False, reason='not yours')
            if action.type == 'rollback':
                return AuthDecision(allowed=False)
            return None

    client = build_client(tmp_path, plugins=(Gatekeeper(),))
    task_id = _create(client, 'make it blue', headers={'authorization': 'Bearer dave'})

    assert client.get('/api/chain', headers={'authorization': 'Bearer dave'}).json()['user_id'] == 'dave'
    denied = client.get(f'/api/task/{task_id}', headers={'authorization': 'Bearer mallory'})
    assert denied.status_code == 403
    assert denied.json() == {'code': 'authorization_denied', 'message': 'not yours'}

    rollback = client.post(
        '/api/chain/rollback',
        json={'target_session_id': RESET_TO_ORIGINAL},
        headers={'authorization': 'Bearer dave'},
    )
    assert rollback.status_code == 403

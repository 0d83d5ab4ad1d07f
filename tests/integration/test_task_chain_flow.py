from __future__ import annotations

import json
from pathlib import Path

from fastapi.testclient import TestClient

from appmorph.agents import ScriptedAgent, ScriptedStep
from appmorph.api import create_app
from appmorph.build import BuildService
from appmorph.config import SESSION_COOKIE
from appmorph.deploy import DeployService
from appmorph.orchestrator import TaskOrchestrator
from appmorph.plugins import HookRunner
from appmorph.proxy import create_proxy_app
from appmorph.registry import TaskRegistry
from appmorph.repository import JsonChainStore
from appmorph.service import ChainService
from appmorph.staging import StagingService

USER = {'x-appmorph-user-id': 'alice'}


def _write_source(root: Path) -> Path:
    source = root / 'app'
    (source / 'node_modules' / 'left-pad').mkdir(parents=True)
    (source / 'node_modules' / 'left-pad' / 'index.js').write_text('module.exports = 1', encoding='utf-8')
    (source / 'index.html').write_text('<title>Shop</title><h1>Welcome</h1>', encoding='utf-8')
    return source


def _build_stack(tmp_path: Path) -> tuple[ChainService, DeployService]:
    source = _write_source(tmp_path)
    hooks = HookRunner()
    registry = TaskRegistry()
    staging = StagingService(source_location=source, stage_root=tmp_path / 'stage', workspace_root=None)
    deploy = DeployService(deploy_root=tmp_path / 'deploy', public_url='http://localhost:3003')
    agent = ScriptedAgent([
        ScriptedStep(
            prompt_match='banner',
            file_changes={'banner.html': '<div>Sale!</div>'},
            summary='Added a sale banner',
        ),
        ScriptedStep(
            prompt_match='footer',
            file_changes={'footer.html': '<footer>Contact</footer>'},
            summary='Added a footer',
        ),
        ScriptedStep(
            prompt_match='dark',
            file_changes={'theme.css': 'body { background: black; }'},
            summary='Dark theme',
        ),
    ])
    orchestrator = TaskOrchestrator(
        registry=registry,
        staging=staging,
        build=BuildService(
            build_command='for f in *.html *.css; do [ -f "$f" ] && cp "$f" <dist>/; done; true',
            deploy=deploy,
            install_command=None,
            timeout_seconds=30,
        ),
        deploy=deploy,
        hooks=hooks,
        agent_factory=lambda: agent,
    )
    service = ChainService(
        store=JsonChainStore(tmp_path / 'appmorph_tasks.json'),
        registry=registry,
        orchestrator=orchestrator,
        staging=staging,
        deploy=deploy,
        hooks=hooks,
        lock_timeout_seconds=10,
    )
    return service, deploy


def test_three_chained_tasks_then_rollback_to_first(tmp_path: Path):
    service, deploy = _build_stack(tmp_path)
    api = TestClient(create_app(service=service))
    proxy = TestClient(create_proxy_app(deploy=deploy))

    task_ids: list[str] = []
    for prompt in ('add a banner', 'add a footer', 'go dark'):
        resp = api.post('/api/task', json={'prompt': prompt}, headers=USER)
        assert resp.status_code == 200
        task_id = resp.json()['taskId']
        task = service.wait(task_id, timeout=30)
        assert task.status.value == 'completed', task.to_payload()
        task_ids.append(task_id)
    first, second, third = task_ids

    third_stage = service.staging.get_stage_path(third)
    assert (third_stage / 'banner.html').exists()
    assert (third_stage / 'footer.html').exists()
    assert (third_stage / 'theme.css').exists()
    assert not (third_stage / 'node_modules').exists()

    chain = api.get('/api/chain', headers=USER).json()
    assert [item['session_id'] for item in chain['chain']] == task_ids
    assert [item['parent_session_id'] for item in chain['chain']] == [None, first, second]

    proxy.get(f'/__appmorph/select/{third}', follow_redirects=False)
    assert proxy.cookies.get(SESSION_COOKIE) == third
    assert proxy.get('/theme.css').text == 'body { background: black; }'

    resp = api.post('/api/chain/rollback', json={'target_session_id': first}, headers=USER)
    assert resp.status_code == 200
    outcome = resp.json()
    assert outcome['removed_sessions'] == [second, third]
    assert outcome['current_session_id'] == first

    first_stage = service.staging.get_stage_path(first)
    assert (first_stage / 'banner.html').read_text(encoding='utf-8') == '<div>Sale!</div>'
    assert not (first_stage / 'footer.html').exists()
    assert not service.staging.stage_exists(second)
    assert not deploy.deploy_exists(third)

    # The stale cookie now falls back to the default variant, which does not exist yet.
    assert proxy.get('/').status_code == 404

    ledger = json.loads((tmp_path / 'appmorph_tasks.json').read_text(encoding='utf-8'))
    assert [row['session_id'] for row in ledger['tasks']] == [first]

    reloaded = JsonChainStore(tmp_path / 'appmorph_tasks.json')
    assert reloaded.get_head('alice').session_id == first

    follow_up = api.post('/api/task', json={'prompt': 'add a footer again'}, headers=USER).json()['taskId']
    service.wait(follow_up, timeout=30)
    head = service.get_head('alice')
    assert head.session_id == follow_up
    assert head.parent_session_id == first
    assert head.chain_position == 1
    service.shutdown()

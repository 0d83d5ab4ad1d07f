from __future__ import annotations

from dataclasses import replace
import json
from pathlib import Path

from fastapi.testclient import TestClient

from appmorph.config import load_settings
from appmorph.db import SqlChainStore
from appmorph.main import build_app, build_chain_store, build_container, build_proxy_app
from appmorph.repository import JsonChainStore


def _env(monkeypatch, tmp_path: Path) -> None:
    source = tmp_path / 'app'
    source.mkdir()
    (source / 'index.html').write_text('<h1>v0</h1>', encoding='utf-8')
    steps = tmp_path / 'steps.json'
    steps.write_text(
        json.dumps([{'prompt_match': 'blue', 'file_changes': {'index.html': '<h1>blue</h1>'}, 'summary': 'ok'}]),
        encoding='utf-8',
    )
    monkeypatch.setenv('APPMORPH_PROJECT_CONFIG', str(tmp_path / 'absent.json'))
    monkeypatch.setenv('APPMORPH_SOURCE_LOCATION', str(source))
    monkeypatch.setenv('APPMORPH_DEPLOY_ROOT', str(tmp_path / 'deploy'))
    monkeypatch.setenv('APPMORPH_BUILD_COMMAND', 'cp index.html <dist>/index.html')
    monkeypatch.setenv('APPMORPH_STAGE_ROOT', str(tmp_path / 'stage'))
    monkeypatch.setenv('APPMORPH_PERSISTENCE_FILE', str(tmp_path / 'appmorph_tasks.json'))
    monkeypatch.setenv('APPMORPH_AGENT_TYPE', 'scripted')
    monkeypatch.setenv('APPMORPH_SCRIPTED_STEPS_FILE', str(steps))
    monkeypatch.delenv('APPMORPH_CHAIN_STORE', raising=False)
    monkeypatch.delenv('APPMORPH_PLUGINS', raising=False)
    monkeypatch.delenv('APPMORPH_OTEL_EXPORTER_OTLP_ENDPOINT', raising=False)


def test_build_app_runs_a_task_end_to_end(monkeypatch, tmp_path: Path):
    _env(monkeypatch, tmp_path)
    client = TestClient(build_app())

    resp = client.post('/api/task', json={'prompt': 'make it blue'}, headers={'x-appmorph-user-id': 'alice'})
    task_id = resp.json()['taskId']
    task = client.app.state.container.service.wait(task_id, timeout=30)

    assert task.status.value == 'completed'
    assert (tmp_path / 'deploy' / task_id / 'index.html').read_text(encoding='utf-8') == '<h1>blue</h1>'
    ledger = json.loads((tmp_path / 'appmorph_tasks.json').read_text(encoding='utf-8'))
    assert [row['session_id'] for row in ledger['tasks']] == [task_id]


def test_build_chain_store_uses_sql_when_configured(monkeypatch, tmp_path: Path):
    _env(monkeypatch, tmp_path)
    settings = replace(
        load_settings(),
        chain_store='sql',
        database_url=f"sqlite+pysqlite:///{(tmp_path / 'chain.db').as_posix()}",
    )
    assert isinstance(build_chain_store(settings), SqlChainStore)


def test_build_chain_store_falls_back_to_json_when_database_fails(monkeypatch, tmp_path: Path):
    _env(monkeypatch, tmp_path)
    settings = replace(load_settings(), chain_store='sql', database_url='nosuchdialect://nowhere')

    store = build_chain_store(settings)

    assert isinstance(store, JsonChainStore)
    assert store.path == (tmp_path / 'appmorph_tasks.json').resolve()


def test_build_container_skips_bad_plugin_references(monkeypatch, tmp_path: Path):
    _env(monkeypatch, tmp_path)
    monkeypatch.setenv('APPMORPH_PLUGINS', 'no_such_plugin_module:make')

    container = build_container()

    assert container.hooks.plugins == []
    container.service.shutdown()


def test_build_proxy_app_serves_default_variant(monkeypatch, tmp_path: Path):
    _env(monkeypatch, tmp_path)
    default = tmp_path / 'deploy' / 'default'
    default.mkdir(parents=True)
    (default / 'index.html').write_text('baseline', encoding='utf-8')

    client = TestClient(build_proxy_app())

    assert client.get('/').text == 'baseline'

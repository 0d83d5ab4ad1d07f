from __future__ import annotations

from dataclasses import dataclass
import json
import os
from pathlib import Path

from appmorph.errors import ConfigError

DIST_PLACEHOLDER = '<dist>'
RESET_TO_ORIGINAL = '__reset_to_original__'
SESSION_COOKIE = 'appmorph_session'
USER_ID_COOKIE = 'appmorph_user_id'
USER_ID_HEADER = 'x-appmorph-user-id'


@dataclass(frozen=True)
class ProjectConfig:
    source_location: Path
    build_command: str
    deploy_root: Path
    source_type: str = 'file_system'
    deploy_type: str = 'file_system'


@dataclass(frozen=True)
class Settings:
    project: ProjectConfig
    stage_root: Path
    persistence_file: Path
    chain_store: str
    database_url: str
    service_name: str
    otel_endpoint: str | None
    agent_type: str
    scripted_steps_file: Path | None
    claude_command: str
    agent_timeout_seconds: int
    build_timeout_seconds: int
    install_command: str
    max_workers: int
    chain_lock_timeout_seconds: int
    finished_task_retention: int
    proxy_public_url: str
    proxy_upstream: str | None
    default_variant: str
    plugins: tuple[str, ...]


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_text(name: str, default: str) -> str:
    return str(os.getenv(name, default) or default).strip()


def load_project_config(path: Path, *, base_dir: Path | None = None) -> dict:
    """Read ``appmorph.json``; a missing file yields an empty mapping."""
    config_path = Path(path)
    if not config_path.exists():
        return {}
    try:
        raw = json.loads(config_path.read_text(encoding='utf-8'))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f'cannot read project config {config_path}: {exc}') from exc
    if not isinstance(raw, dict):
        raise ConfigError(f'project config {config_path} must be a JSON object')
    root = Path(base_dir) if base_dir is not None else config_path.resolve().parent
    out: dict = {}
    for key in ('source_type', 'build_command', 'deploy_type'):
        if raw.get(key) is not None:
            out[key] = str(raw[key]).strip()
    for key in ('source_location', 'deploy_root'):
        if raw.get(key):
            out[key] = (root / str(raw[key]).strip()).resolve()
    return out


def _resolve_project(file_values: dict) -> ProjectConfig:
    source_raw = os.getenv('APPMORPH_SOURCE_LOCATION')
    deploy_raw = os.getenv('APPMORPH_DEPLOY_ROOT')
    build_command = _env_text('APPMORPH_BUILD_COMMAND', '') or str(file_values.get('build_command') or '')

    source_location = Path(source_raw).resolve() if source_raw else file_values.get('source_location')
    deploy_root = Path(deploy_raw).resolve() if deploy_raw else file_values.get('deploy_root')

    if source_location is None:
        raise ConfigError('source_location is required (appmorph.json or APPMORPH_SOURCE_LOCATION)', field='source_location')
    if not Path(source_location).is_dir():
        raise ConfigError(f'source_location does not exist: {source_location}', field='source_location')
    if not build_command:
        raise ConfigError('build_command is required (appmorph.json or APPMORPH_BUILD_COMMAND)', field='build_command')
    if DIST_PLACEHOLDER not in build_command:
        raise ConfigError(f'build_command must contain the {DIST_PLACEHOLDER} placeholder', field='build_command')
    if deploy_root is None:
        raise ConfigError('deploy_root is required (appmorph.json or APPMORPH_DEPLOY_ROOT)', field='deploy_root')

    deploy_type = str(file_values.get('deploy_type') or 'file_system')
    if deploy_type != 'file_system':
        raise ConfigError(f'unsupported deploy_type: {deploy_type}', field='deploy_type')

    return ProjectConfig(
        source_location=Path(source_location),
        build_command=build_command,
        deploy_root=Path(deploy_root),
        source_type=str(file_values.get('source_type') or 'file_system'),
        deploy_type=deploy_type,
    )


def load_settings() -> Settings:
    project_file = Path(_env_text('APPMORPH_PROJECT_CONFIG', 'appmorph.json'))
    project = _resolve_project(load_project_config(project_file))

    stage_root = Path(_env_text('APPMORPH_STAGE_ROOT', 'stage')).resolve()
    persistence_file = Path(_env_text('APPMORPH_PERSISTENCE_FILE', 'appmorph_tasks.json')).resolve()
    chain_store = _env_text('APPMORPH_CHAIN_STORE', 'json').lower()
    if chain_store not in {'json', 'sql'}:
        chain_store = 'json'
    database_url = _env_text('APPMORPH_DATABASE_URL', 'sqlite:///appmorph.db')
    agent_type = _env_text('APPMORPH_AGENT_TYPE', 'claude-cli').lower()
    if agent_type not in {'claude-cli', 'scripted'}:
        raise ConfigError(f'unsupported agent type: {agent_type}', field='APPMORPH_AGENT_TYPE')
    plugins = tuple(
        item.strip()
        for item in _env_text('APPMORPH_PLUGINS', '').split(',')
        if item.strip()
    )
    proxy_upstream = _env_text('APPMORPH_PROXY_UPSTREAM', '') or None
    scripted_steps_raw = _env_text('APPMORPH_SCRIPTED_STEPS_FILE', '')

    return Settings(
        project=project,
        stage_root=stage_root,
        persistence_file=persistence_file,
        chain_store=chain_store,
        database_url=database_url,
        service_name=_env_text('APPMORPH_SERVICE_NAME', 'appmorph'),
        otel_endpoint=os.getenv('APPMORPH_OTEL_EXPORTER_OTLP_ENDPOINT'),
        agent_type=agent_type,
        scripted_steps_file=Path(scripted_steps_raw).resolve() if scripted_steps_raw else None,
        claude_command=_env_text(
            'APPMORPH_CLAUDE_COMMAND',
            'claude -p --output-format text --dangerously-skip-permissions',
        ),
        # Agent runs edit a whole project; allow a generous budget.
        agent_timeout_seconds=_env_int('APPMORPH_AGENT_TIMEOUT_SECONDS', 1800, minimum=10),
        build_timeout_seconds=_env_int('APPMORPH_BUILD_TIMEOUT_SECONDS', 600, minimum=10),
        install_command=_env_text('APPMORPH_INSTALL_COMMAND', 'npm install'),
        max_workers=_env_int('APPMORPH_MAX_WORKERS', 4, minimum=1),
        chain_lock_timeout_seconds=_env_int('APPMORPH_CHAIN_LOCK_TIMEOUT_SECONDS', 30, minimum=0),
        finished_task_retention=_env_int('APPMORPH_FINISHED_TASK_RETENTION', 1000, minimum=1),
        proxy_public_url=_env_text('APPMORPH_PROXY_PUBLIC_URL', 'http://localhost:3003').rstrip('/'),
        proxy_upstream=proxy_upstream.rstrip('/') if proxy_upstream else None,
        default_variant=_env_text('APPMORPH_DEFAULT_VARIANT', 'default'),
        plugins=plugins,
    )

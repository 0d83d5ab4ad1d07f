from __future__ import annotations

from dataclasses import dataclass
import logging

from appmorph.agents import agent_factory_for
from appmorph.api import create_app
from appmorph.build import BuildService
from appmorph.config import Settings, load_settings
from appmorph.db import Database, SqlChainStore
from appmorph.deploy import DeployService
from appmorph.observability import configure_observability
from appmorph.orchestrator import TaskOrchestrator
from appmorph.plugins import HookRunner, PluginLoader
from appmorph.proxy import create_proxy_app
from appmorph.registry import TaskRegistry
from appmorph.repository import ChainStore, JsonChainStore
from appmorph.service import ChainService
from appmorph.staging import StagingService

_log = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    service: ChainService
    deploy: DeployService
    hooks: HookRunner


def build_chain_store(settings: Settings) -> ChainStore:
    if settings.chain_store == 'sql':
        try:
            db = Database(settings.database_url)
            db.create_schema()
            return SqlChainStore(db)
        except Exception:
            _log.exception('database bootstrap failed; falling back to json chain store')
    return JsonChainStore(settings.persistence_file)


def build_container(settings: Settings | None = None) -> Container:
    settings = settings or load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )

    loader = PluginLoader()
    loader.load(settings.plugins)
    hooks = HookRunner(loader)

    project = settings.project
    staging = StagingService(source_location=project.source_location, stage_root=settings.stage_root)
    deploy = DeployService(
        deploy_root=project.deploy_root,
        public_url=settings.proxy_public_url,
        default_variant=settings.default_variant,
    )
    build = BuildService(
        build_command=project.build_command,
        deploy=deploy,
        install_command=settings.install_command,
        timeout_seconds=settings.build_timeout_seconds,
    )
    registry = TaskRegistry(max_finished=settings.finished_task_retention)
    orchestrator = TaskOrchestrator(
        registry=registry,
        staging=staging,
        build=build,
        deploy=deploy,
        hooks=hooks,
        agent_factory=agent_factory_for(settings),
    )
    service = ChainService(
        store=build_chain_store(settings),
        registry=registry,
        orchestrator=orchestrator,
        staging=staging,
        deploy=deploy,
        hooks=hooks,
        max_workers=settings.max_workers,
        lock_timeout_seconds=settings.chain_lock_timeout_seconds,
    )
    return Container(settings=settings, service=service, deploy=deploy, hooks=hooks)


def build_app(settings: Settings | None = None):
    container = build_container(settings)
    return create_app(service=container.service, hooks=container.hooks)


def build_proxy_app(settings: Settings | None = None):
    settings = settings or load_settings()
    configure_observability(
        service_name=f'{settings.service_name}-proxy',
        otlp_endpoint=settings.otel_endpoint,
    )
    deploy = DeployService(
        deploy_root=settings.project.deploy_root,
        public_url=settings.proxy_public_url,
        default_variant=settings.default_variant,
    )
    return create_proxy_app(deploy=deploy, upstream=settings.proxy_upstream)

from __future__ import annotations

from dataclasses import dataclass
import importlib
from threading import Lock
from typing import Any, Callable, Iterable

from appmorph.domain.events import AuditEvent
from appmorph.domain.models import AgentResult, Task, UserContext
from appmorph.errors import PluginVetoed
from appmorph.observability import get_logger

_log = get_logger('appmorph.plugins')


@dataclass(frozen=True)
class VetoResult:
    reason: str


@dataclass(frozen=True)
class AuthDecision:
    allowed: bool
    reason: str | None = None


ALLOW = AuthDecision(allowed=True)


@dataclass(frozen=True)
class Action:
    """``create_task``, ``view_task``, ``rollback``, ``promote`` or ``revert``."""

    type: str
    task_id: str | None = None
    group_id: str | None = None
    to_production: bool = False


@dataclass(frozen=True)
class TaskContext:
    task: Task
    user: UserContext


@dataclass(frozen=True)
class StageContext:
    task: Task
    user: UserContext
    branch: str
    session_id: str
    stage_path: str


@dataclass(frozen=True)
class StageResult:
    success: bool
    preview_url: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PromoteContext:
    user: UserContext
    group_id: str
    session_id: str
    to_production: bool = False


@dataclass(frozen=True)
class PromoteResult:
    success: bool
    url: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RevertContext:
    user: UserContext
    from_session_id: str | None
    to_session_id: str | None
    removed_sessions: tuple[str, ...] = ()
    group_id: str | None = None


class Plugin:
    """Base class for lifecycle plugins. Override only the hooks you need.

    ``before_*`` hooks return a :class:`VetoResult` to stop the guarded
    operation, or ``None`` to let it continue.
    """

    name = 'plugin'

    def on_load(self) -> None:
        return None

    def resolve_user_context(self, request: Any) -> UserContext | None:
        return None

    def authorize(self, action: Action, user: UserContext) -> AuthDecision | None:
        return None

    def before_agent_run(self, ctx: TaskContext) -> VetoResult | None:
        return None

    def after_agent_run(self, ctx: TaskContext, result: AgentResult) -> None:
        return None

    def before_stage(self, ctx: StageContext) -> VetoResult | None:
        return None

    def after_stage(self, ctx: StageContext, result: StageResult) -> None:
        return None

    def before_promote(self, ctx: PromoteContext) -> VetoResult | None:
        return None

    def after_promote(self, ctx: PromoteContext, result: PromoteResult) -> None:
        return None

    def on_revert(self, ctx: RevertContext) -> None:
        return None

    def audit(self, event: AuditEvent) -> None:
        return None


def _plugin_name(plugin: object) -> str:
    return str(getattr(plugin, 'name', '') or plugin.__class__.__name__)


class PluginLoader:
    def __init__(self):
        self._plugins: list[Plugin] = []
        self._lock = Lock()

    @property
    def plugins(self) -> list[Plugin]:
        with self._lock:
            return list(self._plugins)

    def register(self, plugin: Plugin) -> Plugin:
        plugin.on_load()
        with self._lock:
            self._plugins.append(plugin)
        _log.info('plugin registered name=%s', _plugin_name(plugin))
        return plugin

    def load(self, references: Iterable[str]) -> list[Plugin]:
        """Load ``module:factory`` references; failures are logged and skipped."""
        loaded: list[Plugin] = []
        for reference in references:
            text = str(reference or '').strip()
            if not text:
                continue
            try:
                plugin = self.register(self._instantiate(text))
            except Exception:
                _log.exception('plugin failed to load reference=%s', text)
                continue
            loaded.append(plugin)
        return loaded

    @staticmethod
    def _instantiate(reference: str) -> Plugin:
        module_name, sep, attr = reference.partition(':')
        if not sep or not module_name or not attr:
            raise ValueError(f'plugin reference must look like module:factory, got {reference!r}')
        module = importlib.import_module(module_name)
        factory: Callable[[], Plugin] = getattr(module, attr)
        return factory()


class HookRunner:
    """Invokes plugin hooks in registration order."""

    def __init__(self, loader: PluginLoader | None = None, *, isolate_after_hooks: bool = False):
        self.loader = loader or PluginLoader()
        self.isolate_after_hooks = isolate_after_hooks

    @property
    def plugins(self) -> list[Plugin]:
        return self.loader.plugins

    def resolve_user_context(self, request: Any) -> UserContext | None:
        for plugin in self.plugins:
            ctx = plugin.resolve_user_context(request)
            if ctx is not None:
                return ctx
        return None

    def authorize(self, action: Action, user: UserContext) -> AuthDecision:
        for plugin in self.plugins:
            decision = plugin.authorize(action, user)
            if decision is not None and not decision.allowed:
                _log.info('action denied plugin=%s action=%s user=%s', _plugin_name(plugin), action.type, user.user_id)
                return decision
        return ALLOW

    def before_agent_run(self, ctx: TaskContext) -> VetoResult | None:
        return self._first_veto('before_agent_run', ctx)

    def after_agent_run(self, ctx: TaskContext, result: AgentResult) -> None:
        self._call_all('after_agent_run', ctx, result)

    def before_stage(self, ctx: StageContext) -> VetoResult | None:
        return self._first_veto('before_stage', ctx)

    def after_stage(self, ctx: StageContext, result: StageResult) -> None:
        self._call_all('after_stage', ctx, result)

    def before_promote(self, ctx: PromoteContext) -> VetoResult | None:
        return self._first_veto('before_promote', ctx)

    def after_promote(self, ctx: PromoteContext, result: PromoteResult) -> None:
        self._call_all('after_promote', ctx, result)

    def on_revert(self, ctx: RevertContext) -> None:
        self._call_all('on_revert', ctx)

    def audit(self, event: AuditEvent) -> None:
        for plugin in self.plugins:
            try:
                plugin.audit(event)
            except Exception:
                _log.exception('audit hook failed plugin=%s event=%s', _plugin_name(plugin), event.type.value)

    def guard(self, hook: str, ctx) -> None:
        """Run a ``before_*`` hook and raise :class:`PluginVetoed` on the first veto."""
        veto = self._first_veto(hook, ctx)
        if veto is not None:
            raise PluginVetoed(veto.reason, hook=hook)

    def _first_veto(self, hook: str, ctx) -> VetoResult | None:
        for plugin in self.plugins:
            result = getattr(plugin, hook)(ctx)
            if isinstance(result, VetoResult):
                _log.info('%s vetoed plugin=%s reason=%s', hook, _plugin_name(plugin), result.reason)
                return result
        return None

    def _call_all(self, hook: str, *args) -> None:
        for plugin in self.plugins:
            if not self.isolate_after_hooks:
                getattr(plugin, hook)(*args)
                continue
            try:
                getattr(plugin, hook)(*args)
            except Exception:
                _log.exception('%s hook failed plugin=%s', hook, _plugin_name(plugin))

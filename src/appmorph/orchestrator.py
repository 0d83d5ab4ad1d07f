from __future__ import annotations

from typing import Callable, TypedDict

from langgraph.graph import END, StateGraph

from appmorph.agents.base import Agent, start_agent
from appmorph.build import BuildService
from appmorph.deploy import DeployService
from appmorph.domain.events import AuditEvent, AuditEventType, EventType
from appmorph.domain.models import (
    DEFAULT_CONSTRAINTS,
    AgentConstraints,
    AgentResult,
    AgentRunContext,
    DeployInfo,
    ProgressType,
    StageInfo,
    Task,
    TaskStatus,
    UserContext,
    now_ms,
)
from appmorph.errors import BuildError, PluginVetoed, StagingError
from appmorph.observability import get_logger, get_tracer, span, task_log_context
from appmorph.plugins import HookRunner, StageContext, StageResult, TaskContext
from appmorph.registry import TaskRegistry
from appmorph.staging import StagingService

_log = get_logger('appmorph.orchestrator')

FinishedCallback = Callable[[Task, AgentResult], None]


class PipelineState(TypedDict, total=False):
    task: Task
    user: UserContext
    parent_session_id: str | None
    stage_info: StageInfo | None
    deploy_info: DeployInfo | None
    result: AgentResult | None
    error: str | None


class TaskOrchestrator:
    """Runs one task through stage, agent, build and finalize.

    A failed stage or agent ends the task as failed. A failed build is
    recorded on the result but never demotes a successful agent run.
    """

    def __init__(
        self,
        *,
        registry: TaskRegistry,
        staging: StagingService,
        build: BuildService,
        deploy: DeployService,
        hooks: HookRunner,
        agent_factory: Callable[[], Agent],
        constraints: AgentConstraints = DEFAULT_CONSTRAINTS,
        instructions: str | None = None,
    ):
        self.registry = registry
        self.staging = staging
        self.build = build
        self.deploy = deploy
        self.hooks = hooks
        self.agent_factory = agent_factory
        self.constraints = constraints
        self.instructions = instructions
        self._graph = None

    def execute(
        self,
        task: Task,
        parent_session_id: str | None = None,
        *,
        user: UserContext | None = None,
        on_finished: FinishedCallback | None = None,
    ) -> AgentResult:
        with task_log_context(task_id=task.id, user_id=task.user_id, group_id=task.group_id):
            return self._execute(task, parent_session_id, user=user, on_finished=on_finished)

    def _execute(
        self,
        task: Task,
        parent_session_id: str | None,
        *,
        user: UserContext | None,
        on_finished: FinishedCallback | None,
    ) -> AgentResult:
        self.registry.transition(task.id, TaskStatus.RUNNING)
        _log.info('task started task_id=%s parent=%s', task.id, parent_session_id)
        initial: PipelineState = {
            'task': task,
            'user': user or UserContext(user_id=task.user_id),
            'parent_session_id': parent_session_id,
            'stage_info': None,
            'deploy_info': None,
            'result': None,
            'error': None,
        }
        with span(get_tracer('appmorph.orchestrator'), 'task.execute', {'task.id': task.id, 'task.parent': parent_session_id}):
            try:
                state = self._get_graph().invoke(initial)
            except Exception as exc:
                _log.exception('task pipeline raised task_id=%s', task.id)
                message = str(exc) or exc.__class__.__name__
                state = dict(initial, result=AgentResult(success=False, summary=message), error=message)
        return self._finish(task, state, on_finished)

    def _get_graph(self):
        if self._graph is not None:
            return self._graph
        graph = StateGraph(PipelineState)
        graph.add_node('stage', self._stage_node)
        graph.add_node('agent', self._agent_node)
        graph.add_node('build', self._build_node)
        graph.set_entry_point('stage')
        graph.add_conditional_edges('stage', self._route_after_stage, {'agent': 'agent', 'done': END})
        graph.add_conditional_edges('agent', self._route_after_agent, {'build': 'build', 'done': END})
        graph.add_edge('build', END)
        self._graph = graph.compile()
        return self._graph

    @staticmethod
    def _route_after_stage(state: PipelineState) -> str:
        return 'agent' if state.get('stage_info') is not None else 'done'

    @staticmethod
    def _route_after_agent(state: PipelineState) -> str:
        result = state.get('result')
        return 'build' if result is not None and result.success else 'done'

    def _log_progress(self, task_id: str, content: str) -> None:
        self.registry.publish(
            task_id,
            EventType.PROGRESS,
            {'type': ProgressType.LOG.value, 'content': content, 'timestamp': now_ms()},
        )

    def _stage_node(self, state: PipelineState) -> dict:
        task = state['task']
        with span(get_tracer('appmorph.orchestrator'), 'task.stage', {'task.id': task.id}):
            try:
                stage_info = self.staging.create_chained_stage(task.id, state.get('parent_session_id'))
            except (StagingError, OSError, ValueError) as exc:
                _log.warning('stage failed task_id=%s error=%s', task.id, exc)
                return {
                    'result': AgentResult(success=False, summary=f'Failed to create staging directory: {exc}'),
                }
        self._log_progress(task.id, f'Stage created at: {stage_info.stage_path}')
        return {'stage_info': stage_info}

    def _agent_node(self, state: PipelineState) -> dict:
        task = state['task']
        stage_info = state['stage_info']
        assert stage_info is not None
        ctx = TaskContext(task=task, user=state['user'])

        try:
            self.hooks.guard('before_agent_run', ctx)
        except PluginVetoed as exc:
            self._log_progress(task.id, f'Agent run vetoed: {exc.reason}')
            return {'result': AgentResult(success=False, summary=f'Vetoed by plugin: {exc.reason}')}

        abort_flag = self.registry.abort_flag(task.id)
        if abort_flag.is_set():
            return {'result': AgentResult(success=False, summary='Task aborted')}

        agent = self.agent_factory()
        context = AgentRunContext(
            prompt=task.prompt,
            repo_path=stage_info.stage_path,
            branch=task.branch,
            constraints=self.constraints,
            instructions=self.instructions,
        )
        error: str | None = None
        with span(get_tracer('appmorph.orchestrator'), 'task.agent', {'task.id': task.id, 'agent': agent.name}):
            stream = start_agent(agent, context, abort_event=abort_flag)
            for progress in stream:
                self.registry.publish(task.id, EventType.PROGRESS, progress.to_payload())
            try:
                result = stream.result()
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                result = AgentResult(success=False, summary=error)
        _log.info('agent finished task_id=%s success=%s', task.id, result.success)

        self.hooks.after_agent_run(ctx, result)
        return {'result': result, 'error': error}

    def _build_node(self, state: PipelineState) -> dict:
        task = state['task']
        stage_info = state['stage_info']
        result = state['result']
        assert stage_info is not None and result is not None
        stage_ctx = StageContext(
            task=task,
            user=state['user'],
            branch=task.branch,
            session_id=stage_info.session_id,
            stage_path=stage_info.stage_path,
        )

        try:
            self.hooks.guard('before_stage', stage_ctx)
        except PluginVetoed as exc:
            self._log_progress(task.id, f'Build skipped: {exc.reason}')
            result.build_error = f'vetoed: {exc.reason}'
            return {'result': result}

        self._log_progress(task.id, 'Starting build...')
        deploy_info: DeployInfo | None = None
        with span(get_tracer('appmorph.orchestrator'), 'task.build', {'task.id': task.id}):
            try:
                build = self.build.execute_build(task.id, stage_info.stage_path)
            except BuildError as exc:
                result.build_error = str(exc)
                self._log_progress(task.id, f'Build error: {exc}')
            else:
                result.build_output = build.output or None
                if build.success:
                    deploy_info = self.deploy.get_deploy_info(task.id)
                    self._log_progress(task.id, f'Build completed. Deploy URL: {deploy_info.deploy_url}')
                else:
                    result.build_error = build.error
                    self._log_progress(task.id, f'Build failed: {build.error}')

        self.hooks.after_stage(
            stage_ctx,
            StageResult(
                success=deploy_info is not None,
                preview_url=deploy_info.deploy_url if deploy_info is not None else None,
                error=result.build_error,
            ),
        )
        return {'result': result, 'deploy_info': deploy_info}

    def _finish(self, task: Task, state: PipelineState, on_finished: FinishedCallback | None) -> AgentResult:
        result = state.get('result') or AgentResult(success=False, summary='Agent did not return a result')
        result.stage_info = state.get('stage_info')
        result.deploy_info = state.get('deploy_info')
        error = state.get('error')

        if on_finished is not None:
            try:
                on_finished(task, result)
            except Exception as exc:
                _log.exception('task bookkeeping failed task_id=%s', task.id)
                result.success = False
                result.deploy_info = None
                error = f'bookkeeping failed: {exc}'

        if error is not None:
            self.registry.transition(task.id, TaskStatus.FAILED, error=error)
            self.registry.publish(task.id, EventType.ERROR, {'message': error})
        else:
            status = TaskStatus.COMPLETED if result.success else TaskStatus.FAILED
            self.registry.transition(task.id, status, result=result)
            self.registry.publish(task.id, EventType.COMPLETE, result.to_payload())

        self.hooks.audit(
            AuditEvent(
                type=AuditEventType.TASK_COMPLETED,
                user_id=task.user_id,
                details={
                    'task_id': task.id,
                    'success': result.success,
                    'deploy_url': result.deploy_info.deploy_url if result.deploy_info else None,
                },
            )
        )
        _log.info('task finished task_id=%s success=%s', task.id, result.success)
        return result

from __future__ import annotations

from dataclasses import dataclass
import json
from queue import Empty
from typing import Iterator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from appmorph.config import USER_ID_COOKIE, USER_ID_HEADER
from appmorph.domain.events import EventType, TaskEvent
from appmorph.domain.models import ANONYMOUS_USER_ID, ProgressType, UserContext, now_ms
from appmorph.errors import (
    AppmorphError,
    AuthorizationDenied,
    ChainBusyError,
    PluginVetoed,
    RollbackTargetInvalid,
)
from appmorph.observability import get_logger
from appmorph.plugins import Action, HookRunner
from appmorph.service import ChainService

_log = get_logger('appmorph.api')

_ERROR_STATUS: dict[type[AppmorphError], int] = {
    AuthorizationDenied: 403,
    RollbackTargetInvalid: 404,
    ChainBusyError: 409,
    PluginVetoed: 409,
}


class CreateTaskRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=20000)
    groupId: str | None = Field(default=None, max_length=255)


class CreateTaskResponse(BaseModel):
    taskId: str
    branch: str


class RollbackRequest(BaseModel):
    target_session_id: str = Field(min_length=1, max_length=255)


class RollbackResponse(BaseModel):
    success: bool
    removed_sessions: list[str]
    current_session_id: str | None
    cleanup_failures: list[str] = Field(default_factory=list)
    error: str | None = None


class ChainEntryResponse(BaseModel):
    session_id: str
    prompt: str
    created_at: str
    chain_position: int
    parent_session_id: str | None
    is_current: bool


class ChainResponse(BaseModel):
    user_id: str
    chain: list[ChainEntryResponse]
    current_session_id: str | None


class TaskSummary(BaseModel):
    id: str
    prompt: str
    status: str
    createdAt: int


class TaskListResponse(BaseModel):
    tasks: list[TaskSummary]


class AbortResponse(BaseModel):
    taskId: str
    aborted: bool


@dataclass
class AppState:
    service: ChainService
    hooks: HookRunner


def resolve_user(request: Request, hooks: HookRunner) -> UserContext:
    resolved = hooks.resolve_user_context(request)
    if resolved is not None:
        return resolved
    user_id = (
        str(request.headers.get(USER_ID_HEADER) or '').strip()
        or str(request.cookies.get(USER_ID_COOKIE) or '').strip()
        or ANONYMOUS_USER_ID
    )
    return UserContext(user_id=user_id)


def format_sse(event: TaskEvent | None = None, *, event_type: str | None = None, data: dict | None = None) -> str:
    name = event.type if event is not None else str(event_type)
    payload = event.data if event is not None else (data or {})
    return f'event: {name}\ndata: {json.dumps(payload, ensure_ascii=True)}\n\n'


def create_app(*, service: ChainService, hooks: HookRunner | None = None, keepalive_seconds: float = 15.0) -> FastAPI:
    app = FastAPI(title='appmorph api', version='0.3.0')
    app.state.container = AppState(service=service, hooks=hooks or service.hooks)

    def _error_payload(*, code: str, message: str, field: str | None = None) -> dict:
        payload: dict[str, str] = {'code': code, 'message': message}
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        message = str(details[0].get('msg') or 'invalid request body') if details else 'invalid request body'
        field = None
        if details:
            loc = [str(part) for part in details[0].get('loc') or () if part not in {'body', 'query', 'path'}]
            field = '.'.join(loc) or None
        return JSONResponse(status_code=400, content=_error_payload(code='validation_error', message=message, field=field))

    @app.exception_handler(AppmorphError)
    async def handle_appmorph_error(request: Request, exc: AppmorphError):  # noqa: ARG001
        status = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 500)
        if status >= 500:
            _log.error('request failed code=%s message=%s', exc.code, exc.message)
        return JSONResponse(status_code=status, content=_error_payload(code=exc.code, message=exc.message))

    def get_service() -> ChainService:
        return app.state.container.service

    def get_user(request: Request) -> UserContext:
        return resolve_user(request, app.state.container.hooks)

    def _require_task(service: ChainService, task_id: str, user: UserContext):
        task = service.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail='task not found')
        decision = app.state.container.hooks.authorize(Action(type='view_task', task_id=task_id), user)
        if not decision.allowed:
            raise AuthorizationDenied(decision.reason or 'view_task denied')
        return task

    @app.get('/health')
    def health() -> dict[str, str]:
        return {'status': 'ok'}

    @app.post('/api/task', response_model=CreateTaskResponse)
    def create_task(
        payload: CreateTaskRequest,
        service: ChainService = Depends(get_service),
        user: UserContext = Depends(get_user),
    ) -> CreateTaskResponse:
        try:
            task = service.create_task(prompt=payload.prompt, user=user, group_id=payload.groupId)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=_error_payload(code='validation_error', message=str(exc))) from exc
        service.submit(task.id, user=user)
        return CreateTaskResponse(taskId=task.id, branch=task.branch)

    @app.get('/api/task/{task_id}')
    def get_task(
        task_id: str,
        service: ChainService = Depends(get_service),
        user: UserContext = Depends(get_user),
    ) -> dict:
        task = _require_task(service, task_id, user)
        return {'task': task.to_payload()}

    @app.get('/api/task/{task_id}/stream')
    def stream_task(
        task_id: str,
        service: ChainService = Depends(get_service),
        user: UserContext = Depends(get_user),
    ):
        task = _require_task(service, task_id, user)
        subscription = service.registry.subscribe(task_id)

        def _events() -> Iterator[str]:
            try:
                yield format_sse(
                    event_type=EventType.PROGRESS.value,
                    data={
                        'type': ProgressType.LOG.value,
                        'content': f'Connected to task {task_id} (status: {task.status.value})',
                        'timestamp': now_ms(),
                    },
                )
                while True:
                    try:
                        event = subscription.get(timeout=keepalive_seconds)
                    except Empty:
                        yield ': keepalive\n\n'
                        continue
                    if event is None:
                        return
                    yield format_sse(event)
            finally:
                subscription.close()

        return StreamingResponse(
            _events(),
            media_type='text/event-stream',
            headers={'Cache-Control': 'no-cache', 'Connection': 'keep-alive'},
        )

    @app.post('/api/task/{task_id}/abort', response_model=AbortResponse)
    def abort_task(
        task_id: str,
        service: ChainService = Depends(get_service),
        user: UserContext = Depends(get_user),
    ) -> AbortResponse:
        _require_task(service, task_id, user)
        return AbortResponse(taskId=task_id, aborted=service.abort(task_id))

    @app.get('/api/tasks', response_model=TaskListResponse)
    def list_tasks(service: ChainService = Depends(get_service)) -> TaskListResponse:
        return TaskListResponse(
            tasks=[
                TaskSummary(id=task.id, prompt=task.prompt[:100], status=task.status.value, createdAt=task.created_at)
                for task in service.list_tasks()
            ]
        )

    @app.get('/api/chain', response_model=ChainResponse)
    def get_chain(
        service: ChainService = Depends(get_service),
        user: UserContext = Depends(get_user),
    ) -> ChainResponse:
        chain = service.get_chain(user.user_id)
        last_index = len(chain) - 1
        return ChainResponse(
            user_id=user.user_id,
            chain=[
                ChainEntryResponse(
                    session_id=entry.session_id,
                    prompt=entry.prompt,
                    created_at=entry.created_at,
                    chain_position=entry.chain_position,
                    parent_session_id=entry.parent_session_id,
                    is_current=index == last_index,
                )
                for index, entry in enumerate(chain)
            ],
            current_session_id=chain[-1].session_id if chain else None,
        )

    @app.post('/api/chain/rollback', response_model=RollbackResponse)
    def rollback_chain(
        payload: RollbackRequest,
        service: ChainService = Depends(get_service),
        user: UserContext = Depends(get_user),
    ):
        try:
            outcome = service.rollback(user, payload.target_session_id)
        except RollbackTargetInvalid as exc:
            return JSONResponse(
                status_code=404,
                content=RollbackResponse(
                    success=False,
                    removed_sessions=[],
                    current_session_id=None,
                    error=exc.message,
                ).model_dump(),
            )
        return RollbackResponse(**outcome.to_payload())

    return app

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse, Response, StreamingResponse
import httpx
from starlette.background import BackgroundTask

from appmorph.config import SESSION_COOKIE
from appmorph.deploy import RESET_PATH, SELECT_PATH_PREFIX, DeployService
from appmorph.observability import get_logger

_log = get_logger('appmorph.proxy')

_HOP_BY_HOP_HEADERS = frozenset({
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'te',
    'trailers',
    'transfer-encoding',
    'upgrade',
    'host',
    'content-length',
})
_FORWARDED_PREFIXES = ('/api/', '/health')


class ProxyRouter:
    """Maps a request to the build variant selected by the session cookie."""

    def __init__(self, deploy: DeployService):
        self.deploy = deploy

    def resolve_variant(self, session_id: str | None) -> Path:
        session_text = str(session_id or '').strip()
        if session_text and self.deploy.deploy_exists(session_text):
            return self.deploy.get_deploy_path(session_text)
        if session_text:
            _log.info('stale session cookie, serving default variant session=%s', session_text)
        return self.deploy.get_default_path()

    @staticmethod
    def resolve_file(variant_root: Path, request_path: str) -> Path | None:
        """Return the file to serve, falling back to ``index.html`` for SPA routes."""
        root = Path(variant_root).resolve()
        relative = str(request_path or '').lstrip('/')
        candidate = (root / relative).resolve(strict=False)
        try:
            candidate.relative_to(root)
        except ValueError:
            return None
        if candidate.is_dir():
            candidate = candidate / 'index.html'
        if candidate.is_file():
            return candidate
        fallback = root / 'index.html'
        if fallback.is_file():
            return fallback
        return None


def should_forward(path: str) -> bool:
    return any(path == prefix.rstrip('/') or path.startswith(prefix) for prefix in _FORWARDED_PREFIXES)


def _filter_headers(headers) -> dict[str, str]:
    return {key: value for key, value in headers.items() if key.lower() not in _HOP_BY_HOP_HEADERS}


def create_proxy_app(
    *,
    deploy: DeployService,
    upstream: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    router = ProxyRouter(deploy)
    owns_client = client is None and bool(upstream)
    upstream_client = client
    if owns_client:
        upstream_client = httpx.AsyncClient(base_url=str(upstream), timeout=httpx.Timeout(60.0, read=None))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_client and upstream_client is not None:
            await upstream_client.aclose()

    app = FastAPI(title='appmorph proxy', version='0.3.0', lifespan=lifespan)

    @app.get(SELECT_PATH_PREFIX + '{session_id}')
    def select_variant(session_id: str):
        response = RedirectResponse(url='/', status_code=302)
        response.set_cookie(SESSION_COOKIE, session_id, path='/', samesite='lax')
        return response

    @app.get(RESET_PATH)
    def reset_variant():
        response = RedirectResponse(url='/', status_code=302)
        response.delete_cookie(SESSION_COOKIE, path='/')
        return response

    async def forward(request: Request, path: str) -> Response:
        assert upstream_client is not None
        upstream_request = upstream_client.build_request(
            request.method,
            path,
            params=list(request.query_params.multi_items()),
            headers=_filter_headers(request.headers),
            content=await request.body(),
        )
        try:
            upstream_response = await upstream_client.send(upstream_request, stream=True)
        except httpx.HTTPError as exc:
            _log.warning('upstream request failed path=%s error=%s', path, exc)
            return JSONResponse(status_code=502, content={'code': 'bad_gateway', 'message': str(exc)})
        return StreamingResponse(
            upstream_response.aiter_raw(),
            status_code=upstream_response.status_code,
            headers=_filter_headers(upstream_response.headers),
            background=BackgroundTask(upstream_response.aclose),
        )

    @app.api_route('/{full_path:path}', methods=['GET', 'HEAD', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'])
    async def serve(full_path: str, request: Request):
        path = '/' + full_path
        if upstream_client is not None and should_forward(path):
            return await forward(request, path)
        if request.method not in {'GET', 'HEAD'}:
            return JSONResponse(
                status_code=405,
                content={'code': 'method_not_allowed', 'message': 'build variants are read-only'},
            )

        variant_root = router.resolve_variant(request.cookies.get(SESSION_COOKIE))
        target = router.resolve_file(variant_root, full_path)
        if target is None:
            return JSONResponse(status_code=404, content={'code': 'not_found', 'message': f'no file for {path}'})
        return FileResponse(target)

    return app

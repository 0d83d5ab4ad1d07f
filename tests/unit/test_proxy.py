from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient
import httpx

from appmorph.config import SESSION_COOKIE
from appmorph.deploy import DeployService
from appmorph.proxy import ProxyRouter, create_proxy_app, should_forward


def _deploy(tmp_path: Path) -> DeployService:
    deploy = DeployService(deploy_root=tmp_path / 'deploy', public_url='http://localhost:3003')
    default = deploy.get_default_path()
    default.mkdir(parents=True)
    (default / 'index.html').write_text('default build', encoding='utf-8')
    variant = deploy.get_deploy_path('s1')
    (variant / 'assets').mkdir(parents=True)
    (variant / 'index.html').write_text('variant s1', encoding='utf-8')
    (variant / 'assets' / 'app.js').write_text('console.log(1)', encoding='utf-8')
    return deploy


def build_client(tmp_path: Path, *, upstream: str | None = None, handler=None) -> TestClient:
    client = None
    if handler is not None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url='http://upstream')
    app = create_proxy_app(deploy=_deploy(tmp_path), upstream=upstream, client=client)
    return TestClient(app)


def test_deploy_service_paths_and_urls(tmp_path: Path):
    deploy = DeployService(deploy_root=tmp_path / 'deploy', public_url='http://localhost:3003/')

    info = deploy.get_deploy_info('abc')

    assert info.deploy_url == 'http://localhost:3003/__appmorph/select/abc'
    assert info.deploy_path == str((tmp_path / 'deploy' / 'abc').resolve())
    assert deploy.deploy_exists('abc') is False
    assert deploy.deploy_exists('../abc') is False
    assert deploy.cleanup_deploy('abc') is False


def test_router_falls_back_to_default_for_missing_or_stale_cookie(tmp_path: Path):
    deploy = _deploy(tmp_path)
    router = ProxyRouter(deploy)

    assert router.resolve_variant(None) == deploy.get_default_path()
    assert router.resolve_variant('gone') == deploy.get_default_path()
    assert router.resolve_variant('s1') == deploy.get_deploy_path('s1')


def test_resolve_file_blocks_traversal_and_falls_back_to_index(tmp_path: Path):
    deploy = _deploy(tmp_path)
    root = deploy.get_deploy_path('s1')

    assert ProxyRouter.resolve_file(root, '/assets/app.js') == (root / 'assets' / 'app.js').resolve()
    assert ProxyRouter.resolve_file(root, '/some/client/route') == root / 'index.html'
    assert ProxyRouter.resolve_file(root, '/../default/index.html') is None


def test_should_forward_api_and_health_only():
    assert should_forward('/api/task')
    assert should_forward('/health')
    assert not should_forward('/apiary')
    assert not should_forward('/index.html')


def test_serves_default_build_without_cookie(tmp_path: Path):
    client = build_client(tmp_path)
    resp = client.get('/')
    assert resp.status_code == 200
    assert resp.text == 'default build'


def test_serves_selected_variant_with_cookie(tmp_path: Path):
    client = build_client(tmp_path)
    client.cookies.set(SESSION_COOKIE, 's1')

    assert client.get('/').text == 'variant s1'
    assert client.get('/assets/app.js').text == 'console.log(1)'
    assert client.get('/deep/link').text == 'variant s1'


def test_stale_cookie_serves_default_build(tmp_path: Path):
    client = build_client(tmp_path)
    client.cookies.set(SESSION_COOKIE, 'rolled-back-session')
    assert client.get('/').text == 'default build'


def test_select_sets_cookie_and_reset_clears_it(tmp_path: Path):
    client = build_client(tmp_path)

    selected = client.get('/__appmorph/select/s1', follow_redirects=False)
    assert selected.status_code == 302
    assert selected.headers['location'] == '/'
    assert f'{SESSION_COOKIE}=s1' in selected.headers['set-cookie']
    assert client.get('/').text == 'variant s1'

    reset = client.get('/__appmorph/reset', follow_redirects=False)
    assert reset.status_code == 302
    assert client.get('/').text == 'default build'


def test_static_writes_are_rejected(tmp_path: Path):
    client = build_client(tmp_path)
    resp = client.post('/index.html', content=b'x')
    assert resp.status_code == 405


def test_missing_default_build_returns_404(tmp_path: Path):
    deploy = DeployService(deploy_root=tmp_path / 'empty', public_url='http://x')
    client = TestClient(create_proxy_app(deploy=deploy))
    resp = client.get('/')
    assert resp.status_code == 404
    assert resp.json()['code'] == 'not_found'


class ChunkedBody(httpx.AsyncByteStream):
    """Unread upstream body delivered in pieces, like a real network response."""

    def __init__(self, *chunks: bytes):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def test_api_requests_are_forwarded_upstream(tmp_path: Path):
    seen: dict[str, object] = {}
    body = ChunkedBody(b'{"taskId"', b': "t1"}')

    def handler(request: httpx.Request) -> httpx.Response:
        seen['method'] = request.method
        seen['path'] = request.url.path
        seen['query'] = request.url.query.decode()
        seen['body'] = request.content
        seen['user'] = request.headers.get('x-appmorph-user-id')
        return httpx.Response(
            201,
            headers={'content-type': 'application/json', 'x-upstream': 'yes'},
            stream=body,
        )

    client = build_client(tmp_path, handler=handler)
    resp = client.post(
        '/api/task?verbose=1',
        json={'prompt': 'hi'},
        headers={'x-appmorph-user-id': 'alice'},
    )

    assert resp.status_code == 201
    assert resp.json() == {'taskId': 't1'}
    assert resp.headers['x-upstream'] == 'yes'
    assert seen['method'] == 'POST'
    assert seen['path'] == '/api/task'
    assert seen['query'] == 'verbose=1'
    assert b'"prompt"' in seen['body']
    assert seen['user'] == 'alice'
    assert body.closed is True


def test_upstream_failure_returns_bad_gateway(tmp_path: Path):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError('connection refused', request=request)

    client = build_client(tmp_path, handler=handler)
    resp = client.get('/health')

    assert resp.status_code == 502
    assert resp.json()['code'] == 'bad_gateway'


def test_api_paths_serve_static_when_no_upstream(tmp_path: Path):
    client = build_client(tmp_path)
    assert client.get('/api/anything').text == 'default build'

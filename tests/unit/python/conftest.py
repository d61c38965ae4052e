"""Shared fixtures for kioskdash Python unit tests."""

import json
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestClient, TestServer

# Add services/ to sys.path so `from lib.config import cfg` works
SERVICES_DIR = Path(__file__).resolve().parents[3] / "services"
sys.path.insert(0, str(SERVICES_DIR))


@pytest.fixture(autouse=True)
def _reset_config_cache():
    """Reset the config module's cache before each test."""
    import lib.config as config_mod
    config_mod._config = None
    yield
    config_mod._config = None


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Provide a temp config file path and patch _SEARCH_PATHS to use it."""
    import lib.config as config_mod

    path = tmp_path / "config.json"
    monkeypatch.delenv(config_mod.CONFIG_ENV, raising=False)
    monkeypatch.setattr(config_mod, "_SEARCH_PATHS", [str(path)])
    return path


@pytest.fixture
def write_config(config_file):
    """Write a dict as JSON to the temp config file.

    Usage:
        def test_something(write_config):
            write_config({"client_url": "http://kiosk.local"})
            assert cfg("client_url") == "http://kiosk.local"
    """
    import lib.config as config_mod

    def _write(data: dict):
        config_file.write_text(json.dumps(data))
        config_mod._config = None  # force re-read
        return config_file

    return _write


@pytest.fixture
def mock_config(monkeypatch):
    """Directly set the config dict without file I/O."""
    import lib.config as config_mod

    def _mock(data: dict):
        monkeypatch.setattr(config_mod, "_config", data)

    return _mock


# --- Time ---


class FakeClock:
    """Callable epoch-ms clock that only moves when told to."""

    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


# --- Fake upstream (Spotify accounts + Web API + Open-Meteo) ---


class FakeUpstream:
    """One aiohttp app standing in for every remote service.

    Responses are registered per (method, path); every request is recorded.
    A registered response may be a list, which is consumed in order (the
    last entry repeats).
    """

    def __init__(self):
        self.url = ""
        self.calls = []
        self._responses = {}

    def respond(self, method, path, status=200, body=None):
        self._responses[(method, path)] = [(status, body)]

    def respond_sequence(self, method, path, responses):
        self._responses[(method, path)] = list(responses)

    def calls_to(self, method, path):
        return [c for c in self.calls if c["method"] == method and c["path"] == path]

    def endpoints(self):
        return {
            "api_root": f"{self.url}/v1",
            "token_url": f"{self.url}/api/token",
            "authorize_url": f"{self.url}/authorize",
            "forecast_url": f"{self.url}/forecast",
            "geocode_url": f"{self.url}/geocode",
        }

    async def _handle(self, request):
        raw = await request.read()
        form = {}
        body = None
        if request.content_type == "application/x-www-form-urlencoded":
            form = dict(await request.post())
        elif raw:
            body = json.loads(raw)
        self.calls.append({
            "method": request.method,
            "path": request.path,
            "query": dict(request.query),
            "headers": dict(request.headers),
            "form": form,
            "json": body,
        })

        queue = self._responses.get((request.method, request.path))
        if not queue:
            return web.json_response({"error": "not found"}, status=404)
        status, payload = queue.pop(0) if len(queue) > 1 else queue[0]
        if payload is None:
            return web.Response(status=status)
        if isinstance(payload, str):
            return web.Response(status=status, text=payload)
        return web.json_response(payload, status=status)

    def make_app(self):
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self._handle)
        return app


@pytest_asyncio.fixture
async def upstream():
    fake = FakeUpstream()
    server = TestServer(fake.make_app())
    await server.start_server()
    fake.url = f"http://{server.host}:{server.port}"
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def http_session():
    async with ClientSession() as session:
        yield session


# --- Token store ---


@pytest.fixture
def token_store(tmp_path):
    from lib.token_store import TokenStore
    return TokenStore(str(tmp_path / "spotify_token.json"))


@pytest.fixture
def stored_token(token_store, clock):
    """Persist a credential record expiring `expires_in_ms` from now."""
    from lib.token_store import CredentialRecord

    def _store(expires_in_ms=3_600_000, access="cached-access", refresh="stored-refresh"):
        record = CredentialRecord(access, refresh, clock.now + expires_in_ms)
        token_store.save(record)
        return record

    return _store


# --- Dashboard HTTP surface ---


@pytest.fixture
def dashboard_config():
    return {
        "client_url": "http://kiosk.local:5173",
        "spotify": {"device_name": "Kitchen"},
        "weather": {"latitude": 43.65, "longitude": -79.38, "city": "Toronto"},
    }


@pytest_asyncio.fixture
async def dashboard(upstream, token_store, clock, mock_config, dashboard_config, monkeypatch):
    """TestClient around a DashboardService wired to the fake upstream."""
    from dashboard import DashboardService

    monkeypatch.setenv("SPOTIFY_CLIENT_ID", "client-id")
    monkeypatch.setenv("SPOTIFY_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("SPOTIFY_REDIRECT_URI", "http://kiosk.local:3001/callback")
    mock_config(dashboard_config)

    service = DashboardService(token_store, endpoints=upstream.endpoints(), clock=clock)
    client = TestClient(TestServer(service.make_app()))
    await client.start_server()
    client.service = service
    yield client
    await client.close()

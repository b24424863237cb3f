import asyncio
import inspect
import json
import sys
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from chatlocal.app import create_app  # noqa: E402
from chatlocal.config import Settings, reset_settings_cache  # noqa: E402
from chatlocal.service.runtime import Runtime  # noqa: E402


def ndjson(fragments, *, done=True, model="gemma3"):
    """Encode ``fragments`` the way the generate endpoint streams them."""
    lines = [
        json.dumps({"model": model, "response": text, "done": False, "created_at": "2024-01-01T00:00:00Z"})
        for text in fragments
    ]
    if done:
        lines.append(json.dumps({"model": model, "response": "", "done": True}))
    return ("\n".join(lines) + "\n").encode()


class FakeBackend:
    """Scripted stand-in for the model server, served through ``httpx.MockTransport``."""

    def __init__(self):
        self.body = ndjson(["Hello", " world", "\n", "Second", " sentence."])
        self.status_code = 200
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        return httpx.Response(self.status_code, content=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temp dir with cheap argon2 parameters."""
    static_dir = tmp_path / "static"
    static_dir.mkdir()
    (static_dir / "view.html").write_text("<html>chat</html>")
    (static_dir / "login.html").write_text("<html>login</html>")
    return Settings(
        data_dir=str(tmp_path / "data"),
        static_dir=str(static_dir),
        password_time_cost=1,
        password_memory_cost=1024,
        password_parallelism=1,
    )


@pytest.fixture
def make_ndjson():
    return ndjson


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def runtime(settings, backend):
    return Runtime(settings, backend_transport=backend.transport)


@pytest.fixture
def app(runtime):
    return create_app(runtime=runtime)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

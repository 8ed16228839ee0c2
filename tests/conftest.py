from __future__ import annotations

from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from sucursync.config import Settings
from sucursync.db import create_session_maker, init_models
from sucursync.server.app import create_app
from sucursync.server.auth import APIKeyAuthProvider, HeaderAuthProvider

PROBE_HOST = "probe.test"


class PeerNetwork(httpx.AsyncBaseTransport):
    """Routes requests by host to in-process apps.

    Hosts can be taken offline; the connectivity probe host answers 200
    while the network is online.
    """

    def __init__(self) -> None:
        self.apps: dict[str, httpx.ASGITransport] = {}
        self.down: set[str] = set()
        self.online = True
        self.requests: list[httpx.Request] = []

    def add(self, host: str, app) -> None:
        self.apps[host] = httpx.ASGITransport(app=app)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if not self.online:
            raise httpx.ConnectError("network unreachable", request=request)
        if host == PROBE_HOST:
            return httpx.Response(200, request=request)
        if host in self.down or host not in self.apps:
            raise httpx.ConnectError(f"cannot reach {host}", request=request)
        return await self.apps[host].handle_async_request(request)


def make_settings(data_dir: Path, name: str, **overrides) -> Settings:
    values = {
        "data_dir": data_dir,
        "branch_name": name,
        "scheduler_enabled": False,
        "connectivity_url": f"http://{PROBE_HOST}",
        "chunk_size": 1024,
        "max_file_size": 1024 * 1024,
        "user_chunk_size": 512,
        "user_max_file_size": 64 * 1024,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture()
def network() -> PeerNetwork:
    return PeerNetwork()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    """Settings for a branch called Alpha in a temporary directory."""
    return make_settings(tmp_path / "alpha", "Alpha", server_url="http://alpha.test")


@pytest_asyncio.fixture()
async def app(settings, network):
    """Started Alpha app; its peer calls go through *network*."""
    app = create_app(settings, transport=network)
    network.add("alpha.test", app)
    await app.state.startup()
    yield app
    await app.state.shutdown()


@pytest_asyncio.fixture()
async def state(app):
    return app.state


@pytest_asyncio.fixture()
async def client(app):
    """httpx AsyncClient wired to the Alpha app via ASGI transport."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture()
async def start_branch(tmp_path, network):
    """Factory that starts another branch reachable as http://<host>."""
    started = []

    async def _start(name: str, host: str, **overrides):
        settings = make_settings(
            tmp_path / name.lower(), name, server_url=f"http://{host}", **overrides,
        )
        app = create_app(settings, transport=network)
        network.add(host, app)
        await app.state.startup()
        started.append(app)
        return app

    yield _start
    for app in reversed(started):
        await app.state.shutdown()


@pytest_asyncio.fixture()
async def beta(start_branch):
    """A second started branch, Beta, reachable as http://beta.test."""
    return await start_branch("Beta", "beta.test")


@pytest_asyncio.fixture()
async def authed_app(tmp_path):
    """App requiring an API key."""
    app = create_app(
        make_settings(tmp_path / "authed", "Authed"),
        auth=APIKeyAuthProvider("test-secret"),
    )
    await app.state.startup()
    yield app
    await app.state.shutdown()


@pytest_asyncio.fixture()
async def authed_client(authed_app):
    transport = httpx.ASGITransport(app=authed_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture()
async def header_client(tmp_path):
    """Client for an app that trusts the X-User-ID header."""
    app = create_app(make_settings(tmp_path / "hdr", "Header"), auth=HeaderAuthProvider())
    await app.state.startup()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await app.state.shutdown()


@pytest_asyncio.fixture()
async def session_maker(tmp_path):
    """Bare database, for service tests that need no app."""
    engine, maker = create_session_maker(tmp_path / "test.db")
    await init_models(engine)
    yield maker
    await engine.dispose()


@pytest.fixture()
def sample_files(tmp_path):
    """A small directory tree of files to upload."""
    root = tmp_path / "files"
    root.mkdir()
    (root / "a.bin").write_bytes(b"a" * 3000)
    (root / "b.txt").write_bytes(b"hello branch")

    sub = root / "sub"
    sub.mkdir()
    (sub / "c.bin").write_bytes(bytes(range(256)) * 10)

    return root

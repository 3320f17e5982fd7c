"""End-to-end tests for the live server on ephemeral ports."""

import asyncio
import json
import socket
import ssl
import urllib.error
import urllib.request
from unittest.mock import patch

import pytest
import pytest_asyncio
import websockets

from livedev.certs import CertificateProvisioner
from livedev.config import ServerConfig
from livedev.errors import BindError
from livedev.hmr import DevToolProfile, HmrAdapter
from livedev.events import ERROR, FILE_CHANGED, STARTED, STOPPED, LifecycleEvents
from livedev.reload_script import RELOAD_MARKER, RELOAD_SOCKET_PATH
from livedev.server import LiveServer


def fetch(url, context=None):
    try:
        with urllib.request.urlopen(url, timeout=5, context=context) as response:
            return response.status, response.read().decode()
    except urllib.error.HTTPError as e:
        return e.code, e.read().decode()


async def wait_for_clients(server, count, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(server.connections) < count:
        if loop.time() > deadline:
            raise AssertionError(f"expected {count} clients, have {len(server.connections)}")
        await asyncio.sleep(0.02)


@pytest.fixture
def recorded_events():
    events = LifecycleEvents()
    recorded = []
    for name in (STARTED, STOPPED, ERROR, FILE_CHANGED):
        events.on(name, lambda *args, _name=name: recorded.append((_name, args)))
    return events, recorded


@pytest_asyncio.fixture
async def live_server(project, recorded_events):
    events, _ = recorded_events
    config = ServerConfig(project, port=0, open_browser=False, spa_mode=True)
    server = LiveServer(config, events=events)
    await server.start()
    yield server
    await server.stop()


def socket_url(server):
    return f"ws://127.0.0.1:{server.socket_port}{RELOAD_SOCKET_PATH}"


@pytest.mark.asyncio
async def test_serves_injected_pages(live_server):
    info = live_server.server_info()
    assert info.https is False
    assert info.port == live_server.http_port

    status, body = await asyncio.to_thread(
        fetch, f"http://127.0.0.1:{live_server.http_port}/"
    )
    assert status == 200
    assert RELOAD_MARKER in body
    assert f"var SOCKET_PORT = {live_server.socket_port};" in body

    status, body = await asyncio.to_thread(
        fetch, f"http://127.0.0.1:{live_server.http_port}/client/route"
    )
    assert status == 200
    assert "Home" in body


@pytest.mark.asyncio
async def test_file_change_broadcasts_reload(live_server, recorded_events):
    _, recorded = recorded_events
    async with websockets.connect(socket_url(live_server)) as client:
        await wait_for_clients(live_server, 1)
        await live_server._handle_file_change("foo.css", ".css")
        message = json.loads(await asyncio.wait_for(client.recv(), 5))

    assert message == {"type": "reload", "file": "foo.css", "extension": ".css"}
    assert (FILE_CHANGED, ("foo.css",)) in recorded


@pytest.mark.asyncio
async def test_modifying_a_file_reloads_clients(live_server, project):
    target = project / "style.css"
    async with websockets.connect(socket_url(live_server)) as client:
        await wait_for_clients(live_server, 1)
        # the watcher may still be starting up; keep touching until it notices
        for attempt in range(10):
            target.write_text(f"body {{ color: blue; }} /* {attempt} */")
            try:
                raw = await asyncio.wait_for(client.recv(), 1.0)
            except asyncio.TimeoutError:
                continue
            break
        else:
            pytest.fail("no reload message received")

    message = json.loads(raw)
    assert message["type"] == "reload"
    assert message["file"] == "style.css"
    assert message["extension"] == ".css"


@pytest.mark.asyncio
async def test_collab_edit_is_relayed_not_echoed(live_server):
    url = socket_url(live_server)
    async with websockets.connect(url) as alice, websockets.connect(url) as bob:
        await wait_for_clients(live_server, 2)
        edit = {
            "channel": "collab",
            "type": "doc-sync",
            "docId": "notes",
            "userId": "alice",
            "content": "hello",
        }
        await alice.send(json.dumps(edit))

        received = json.loads(await asyncio.wait_for(bob.recv(), 5))
        assert received == edit

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(alice.recv(), 0.3)

        await alice.send("not json")
        await bob.send(
            json.dumps({"channel": "collab", "type": "get-state", "docId": "notes"})
        )
        state = json.loads(await asyncio.wait_for(bob.recv(), 5))
        assert state["type"] == "state"
        assert state["content"] == "hello"


@pytest.mark.asyncio
async def test_stop_releases_everything(project, recorded_events):
    events, recorded = recorded_events
    server = LiveServer(ServerConfig(project, port=0, open_browser=False), events=events)

    info = await server.start()
    http_port, ws_port = server.http_port, server.socket_port
    assert server.is_running()
    await server.stop()

    assert not server.is_running()
    assert server.server_info() is None
    assert [name for name, _ in recorded] == [STARTED, STOPPED]
    assert recorded[0][1] == (info.port, False)

    # both ports can be bound again
    for port in (http_port, ws_port):
        with socket.socket() as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind(("127.0.0.1", port))

    # a second stop is harmless and does not emit again
    await server.stop()
    assert [name for name, _ in recorded] == [STARTED, STOPPED]


@pytest.mark.asyncio
async def test_port_in_use_is_a_bind_error(project, recorded_events):
    events, recorded = recorded_events
    with socket.socket() as taken:
        taken.bind(("127.0.0.1", 0))
        taken.listen()
        port = taken.getsockname()[1]

        config = ServerConfig(project, port=port, ws_port=0, open_browser=False)
        server = LiveServer(config, events=events)
        with pytest.raises(BindError) as excinfo:
            await server.start()

    assert excinfo.value.port == port
    assert not server.is_running()
    assert server._ws_server is None
    assert server._http_server is None
    assert recorded[0][0] == ERROR


def insecure_context():
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


@pytest.mark.asyncio
async def test_https_with_self_signed_certificate(project, tmp_path):
    config = ServerConfig(project, port=0, use_https=True, open_browser=False)
    server = LiveServer(config, certificates=CertificateProvisioner(tmp_path / "certs"))

    with patch("livedev.certs.shutil.which", return_value=None):
        info = await server.start()
    try:
        assert info.https is True
        assert info.url.startswith("https://localhost:")

        context = insecure_context()
        status, body = await asyncio.to_thread(
            fetch, f"https://127.0.0.1:{server.http_port}/", context
        )
        assert status == 200
        assert RELOAD_MARKER in body

        url = f"wss://127.0.0.1:{server.socket_port}{RELOAD_SOCKET_PATH}"
        async with websockets.connect(url, ssl=context):
            await wait_for_clients(server, 1)
    finally:
        await server.stop()


async def _echo_with_path(connection):
    async for message in connection:
        await connection.send(f"{connection.request.path}|{message}")


@pytest_asyncio.fixture
async def hmr_server(project):
    upstream = await websockets.serve(
        _echo_with_path, "127.0.0.1", 0, subprotocols=["vite-hmr"]
    )
    port = upstream.sockets[0].getsockname()[1]
    adapter = HmrAdapter(DevToolProfile("vite", ("npx", "vite"), port), project, host="127.0.0.1")
    config = ServerConfig(project, port=0, project_type="vite", open_browser=False)
    server = LiveServer(config, hmr_adapter=adapter)
    await server.start()
    yield server
    await server.stop()
    upstream.close()
    await upstream.wait_closed()


@pytest.mark.asyncio
async def test_hmr_socket_on_page_origin_reaches_dev_server(hmr_server):
    url = f"ws://127.0.0.1:{hmr_server.http_port}/hmr?token=abc"
    async with websockets.connect(url, subprotocols=["vite-hmr"]) as client:
        assert client.subprotocol == "vite-hmr"
        await client.send("ping")
        reply = await asyncio.wait_for(client.recv(), 5)

    assert reply == "/hmr?token=abc|ping"
    assert len(hmr_server.connections) == 0


@pytest.mark.asyncio
async def test_hmr_socket_on_socket_port_is_relayed(hmr_server):
    url = f"ws://127.0.0.1:{hmr_server.socket_port}/hmr"
    async with websockets.connect(url, subprotocols=["vite-hmr"]) as client:
        assert client.subprotocol == "vite-hmr"
        await client.send("ping")
        assert await asyncio.wait_for(client.recv(), 5) == "/hmr|ping"


@pytest.mark.asyncio
async def test_reload_channel_still_served_with_hmr(hmr_server):
    url = f"ws://127.0.0.1:{hmr_server.socket_port}{RELOAD_SOCKET_PATH}"
    async with websockets.connect(url) as client:
        await wait_for_clients(hmr_server, 1)
        await hmr_server._handle_file_change("src/App.jsx", ".jsx")
        message = json.loads(await asyncio.wait_for(client.recv(), 5))
    assert message["file"] == "src/App.jsx"

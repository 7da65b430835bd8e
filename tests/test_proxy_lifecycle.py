import asyncio
import pytest
from httpx import AsyncClient, ASGITransport
from liverelay.app import app
from liverelay.core import engine, registry
from liverelay.capture import Direction

async def wait_for(predicate, timeout=2.0):
    for _ in range(int(timeout / 0.02)):
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()

@pytest.mark.asyncio
async def test_proxy_lifecycle(echo_server):
    """
    Verifies the full lifecycle of a proxy: creation, verification, and removal.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:

        # 1. Create Proxy
        proxy_port = 9095
        resp = await ac.post("/api/proxies", json={
            "local_port": proxy_port,
            "target_host": "127.0.0.1",
            "target_port": echo_server,
            "name": "Lifecycle-Test",
        })
        assert resp.status_code == 200
        assert any(p.config.local_port == proxy_port for p in engine.proxies)

        resp = await ac.get("/api/proxies")
        assert {"local_port": proxy_port, "target_host": "127.0.0.1",
                "target_port": echo_server, "name": "Lifecycle-Test"} in resp.json()

        # 2. Remove Proxy
        resp = await ac.delete(f"/api/proxies/{proxy_port}")
        assert resp.status_code == 200
        assert resp.json()["status"] == "success"
        assert not any(p.config.local_port == proxy_port for p in engine.proxies)

        # 3. Remove Non-existent Proxy
        resp = await ac.delete(f"/api/proxies/{proxy_port}")
        assert resp.status_code == 404

@pytest.mark.asyncio
async def test_relayed_traffic_is_captured(echo_server):
    proxy_port = 9096
    await engine.add_proxy(proxy_port, "127.0.0.1", echo_server, "Capture-Test")
    queue = await registry.subscribe()

    msg = b"HELLO_RELAY"
    reader, writer = await asyncio.open_connection("127.0.0.1", proxy_port)
    writer.write(msg)
    await writer.drain()
    assert await asyncio.wait_for(reader.read(100), timeout=2) == msg

    assert await wait_for(lambda: len(registry.sessions) == 1)
    entry = next(iter(registry.sessions.values()))
    assert entry.proxy_name == "Capture-Test"
    assert await wait_for(lambda: len(entry.relay.records) >= 2)
    records = entry.relay.records.snapshot()
    assert records[0].direction is Direction.CLIENT_TO_SERVER
    assert b"".join(r.payload for r in records if r.direction is Direction.CLIENT_TO_SERVER) == msg
    assert b"".join(r.payload for r in records if r.direction is Direction.SERVER_TO_CLIENT) == msg
    assert entry.relay.is_connected

    # Client goes away, the cascade closes the server side too
    writer.close()
    await writer.wait_closed()
    assert await wait_for(lambda: entry.relay.name.endswith("[Disconnected]"))
    assert not entry.relay.is_connected
    # Let dispatched notifications run
    await asyncio.sleep(0.05)

    events = []
    while not queue.empty():
        events.append(await queue.get())
    packets = [e for e in events if e["type"] == "packet"]
    assert {p["direction"] for p in packets} == {"C->S", "S->C"}
    assert all(p["session_id"] == entry.session_id for p in packets)
    sessions = [e for e in events if e["type"] == "session"]
    assert sessions[-1]["name"].endswith("[Disconnected]")
    assert sessions[-1]["connected"] is False

@pytest.mark.asyncio
async def test_session_endpoints(echo_server):
    proxy_port = 9097
    await engine.add_proxy(proxy_port, "127.0.0.1", echo_server, "Session-Test")
    reader, writer = await asyncio.open_connection("127.0.0.1", proxy_port)
    writer.write(b"ping")
    await writer.drain()
    await asyncio.wait_for(reader.read(100), timeout=2)
    assert await wait_for(lambda: len(registry.sessions) == 1)
    session_id = next(iter(registry.sessions))

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.get("/api/sessions", params={"proxy_name": "Session-Test"})
        assert [s["id"] for s in resp.json()] == [session_id]
        assert resp.json()[0]["connected"] is True

        assert await wait_for(lambda: len(registry.sessions[session_id].relay.records) >= 2)
        resp = await ac.get(f"/api/sessions/{session_id}/records", params={"limit": 1})
        assert resp.status_code == 200
        assert len(resp.json()) == 1
        assert resp.json()[0]["direction"] == "S->C"

        resp = await ac.post(f"/api/sessions/{session_id}/disconnect")
        assert resp.status_code == 200
        assert resp.json()["session"]["name"].endswith("[Disconnected]")
        assert resp.json()["session"]["state"] == "disconnected"

        resp = await ac.get("/api/sessions/nope/records")
        assert resp.status_code == 404
        resp = await ac.post("/api/sessions/nope/disconnect")
        assert resp.status_code == 404

    assert await asyncio.wait_for(reader.read(100), timeout=2) == b""
    writer.close()

@pytest.mark.asyncio
async def test_unreachable_target_closes_client():
    proxy_port = 9098
    await engine.add_proxy(proxy_port, "127.0.0.1", 1, "Dead-Target")

    reader, writer = await asyncio.open_connection("127.0.0.1", proxy_port)
    assert await asyncio.wait_for(reader.read(100), timeout=2) == b""
    writer.close()
    assert registry.sessions == {}

@pytest.mark.asyncio
async def test_records_limit_is_validated(echo_server):
    from liverelay.app import list_records

    proxy_port = 9099
    await engine.add_proxy(proxy_port, "127.0.0.1", echo_server, "Limit-Test")
    reader, writer = await asyncio.open_connection("127.0.0.1", proxy_port)
    writer.write(b"ping")
    await writer.drain()
    await asyncio.wait_for(reader.read(100), timeout=2)
    assert await wait_for(lambda: len(registry.sessions) == 1)
    session_id = next(iter(registry.sessions))
    assert await wait_for(lambda: len(registry.sessions[session_id].relay.records) >= 2)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        for bad in (0, -1):
            resp = await ac.get(f"/api/sessions/{session_id}/records", params={"limit": bad})
            assert resp.status_code == 422

    assert len(list_records(session_id, 0)) == 1
    assert len(list_records(session_id, -5)) == 1
    writer.close()

def test_monitor_unsubscribes_when_socket_goes_away():
    from fastapi.testclient import TestClient

    client = TestClient(app)
    with client.websocket_connect("/ws/monitor"):
        pass

    assert registry.subscribers == []

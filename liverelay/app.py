import argparse
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Query
from fastmcp import FastMCP
from pydantic import BaseModel

from .core import engine, registry, record_to_dict

logger = logging.getLogger("liverelay.app")

# --- Configuration ---
PROXIES_ENV = "LIVERELAY_PROXIES"

class ProxyRequest(BaseModel):
    local_port: int
    target_host: str
    target_port: int
    name: str

def load_proxies_from_env() -> list:
    raw = os.environ.get(PROXIES_ENV)
    if not raw:
        return []
    try:
        return [ProxyRequest(**p) for p in json.loads(raw)]
    except (ValueError, TypeError) as e:
        logger.error(f"Ignoring invalid {PROXIES_ENV}: {e}")
        return []

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup logic
    logger.info("LiveRelay Initializing...")
    for proxy in load_proxies_from_env():
        try:
            await engine.add_proxy(proxy.local_port, proxy.target_host, proxy.target_port, proxy.name)
        except Exception as e:
            logger.error(f"Failed to start proxy '{proxy.name}': {e}")
    yield
    # Shutdown logic
    logger.info("LiveRelay Shutting down...")
    await engine.shutdown()

def list_records(session_id: str, limit: int) -> list:
    records = registry.get_session(session_id).relay.records.snapshot()
    limit = max(1, limit)
    return [record_to_dict(r) for r in records[-limit:]]

def disconnect(session_id: str) -> dict:
    entry = registry.get_session(session_id)
    entry.relay.disconnect()
    return entry.describe()

# --- MCP Server Definition ---
mcp = FastMCP("LiveRelay Traffic Capture")

@mcp.tool()
async def start_proxy(local_port: int, target_host: str, target_port: int, name: str):
    """
    Start a new man-in-the-middle TCP proxy.

    Args:
        local_port: The port on localhost to listen on.
        target_host: The destination hostname or IP.
        target_port: The destination port.
        name: A human-readable name for this proxy.
    """
    try:
        msg = await engine.add_proxy(local_port, target_host, target_port, name)
        return msg
    except Exception as e:
        return f"Failed to start proxy: {str(e)}"

@mcp.tool()
def list_sessions() -> str:
    """List relayed client/server sessions, including disconnected ones."""
    return json.dumps([s.describe() for s in registry.sessions.values()], indent=2)

@mcp.tool()
def list_captured_records(session_id: str, limit: int = 10) -> str:
    """Get the most recent records captured for a session."""
    try:
        return json.dumps(list_records(session_id, limit), indent=2)
    except ValueError as e:
        return str(e)

@mcp.tool()
def disconnect_session(session_id: str) -> str:
    """Disconnect both sides of a relayed session."""
    try:
        return json.dumps(disconnect(session_id), indent=2)
    except ValueError as e:
        return str(e)

@mcp.resource("tcp://proxies/active")
def list_active_proxies() -> str:
    """Returns a list of currently active TCP proxies."""
    proxies = [
        {"name": p.name, "listen": p.local_port, "target": f"{p.target_host}:{p.target_port}"}
        for p in registry.active_proxies.values()
    ]
    return json.dumps(proxies, indent=2)

# --- FastAPI App ---
app = FastAPI(lifespan=lifespan)

# Mount MCP
mcp_app = mcp.http_app(transport="sse")
app.mount("/mcp", mcp_app)

@app.get("/api/proxies")
async def get_proxies():
    return [p.__dict__ for p in registry.active_proxies.values()]

@app.post("/api/proxies")
async def create_proxy(proxy: ProxyRequest):
    try:
        msg = await engine.add_proxy(
            proxy.local_port,
            proxy.target_host,
            proxy.target_port,
            proxy.name
        )
        return {"status": "success", "message": msg}
    except Exception as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.delete("/api/proxies/{port}")
async def remove_proxy(port: int):
    try:
        msg = await engine.remove_proxy(port)
        return {"status": "success", "message": msg}
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

@app.get("/api/sessions")
async def get_sessions(proxy_name: Optional[str] = None):
    sessions = list(registry.sessions.values())
    if proxy_name:
        sessions = [s for s in sessions if s.proxy_name == proxy_name]
    return [s.describe() for s in sessions]

@app.get("/api/sessions/{session_id}/records")
async def get_records(session_id: str, limit: int = Query(100, ge=1)):
    try:
        return list_records(session_id, limit)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

@app.post("/api/sessions/{session_id}/disconnect")
async def disconnect_session_endpoint(session_id: str):
    try:
        session = disconnect(session_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "success", "session": session}

@app.websocket("/ws/monitor")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    queue = await registry.subscribe()
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event)
    except WebSocketDisconnect:
        pass
    finally:
        registry.unsubscribe(queue)

def parse_proxy(value: str) -> dict:
    try:
        name, local_port, target_host, target_port = value.split(":")
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid proxy '{value}', expected name:local_port:target_host:target_port"
        )
    return {"name": name, "local_port": local_port, "target_host": target_host, "target_port": target_port}

def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="LiveRelay man-in-the-middle capture server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind the API to")
    parser.add_argument("--port", type=int, default=8002, help="Port to bind the API to")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    parser.add_argument(
        "--proxy", action="append", type=parse_proxy, default=[],
        help="Proxy to start, as name:local_port:target_host:target_port (repeatable)"
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if args.proxy:
        os.environ[PROXIES_ENV] = json.dumps(args.proxy)

    uvicorn.run("liverelay.app:app", host=args.host, port=args.port, reload=args.reload)

if __name__ == "__main__":
    main()

import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from .capture import CapturedRecord
from .connection import StreamConnection
from .dispatch import LoopDispatcher
from .disconnect import SessionState
from .relay import LiveRelay, RelaySetupError

logger = logging.getLogger("liverelay.core")

MAX_SESSIONS = 200

@dataclass
class PacketEvent:
    session_id: str
    proxy_name: str
    direction: str  # "C->S" or "S->C"
    data_hex: str
    data_str: str
    relative_timestamp: float
    type: str = "packet"

@dataclass
class SessionEvent:
    session_id: str
    proxy_name: str
    name: str
    connected: bool
    type: str = "session"

@dataclass
class ProxyConfig:
    local_port: int
    target_host: str
    target_port: int
    name: str

@dataclass
class SessionEntry:
    session_id: str
    proxy_name: str
    relay: LiveRelay

    def describe(self) -> dict:
        return {
            "id": self.session_id,
            "proxy": self.proxy_name,
            "name": self.relay.name,
            "connected": self.relay.is_connected,
            "state": self.relay.state.value,
            "started_at": self.relay.started_at.isoformat(),
            "records": len(self.relay.records),
        }

def record_to_dict(record: CapturedRecord) -> dict:
    return {
        "direction": record.direction.value,
        "relative_timestamp": record.relative_timestamp,
        "data_hex": record.hex(),
        "data_str": record.payload.decode('utf-8', errors='replace'),
    }

class SessionRegistry:
    """Singleton to track relay sessions and broadcast their events."""
    def __init__(self, max_sessions: int = MAX_SESSIONS):
        self.subscribers: List[asyncio.Queue] = []
        self.active_proxies: Dict[int, ProxyConfig] = {}
        self.sessions: "OrderedDict[str, SessionEntry]" = OrderedDict()
        self.max_sessions = max_sessions

    def register_proxy(self, config: ProxyConfig):
        self.active_proxies[config.local_port] = config

    def add_session(self, proxy_name: str, relay: LiveRelay) -> str:
        session_id = str(uuid.uuid4())[:8]
        self.sessions[session_id] = SessionEntry(session_id, proxy_name, relay)
        self._evict()

        def captured(relay: LiveRelay, record: CapturedRecord):
            self.broadcast(PacketEvent(
                session_id=session_id,
                proxy_name=proxy_name,
                direction=record.direction.value,
                data_hex=record.hex(),
                data_str=record.payload.decode('utf-8', errors='replace'),
                relative_timestamp=record.relative_timestamp,
            ))

        def renamed(relay: LiveRelay, name: str):
            self.broadcast(SessionEvent(session_id, proxy_name, name, relay.is_connected))

        relay.on_record_captured(captured)
        relay.on_name_changed(renamed)
        self.broadcast(SessionEvent(session_id, proxy_name, relay.name, relay.is_connected))
        return session_id

    def _evict(self):
        """Drops the oldest disconnected sessions once over the limit. Live sessions are kept."""
        excess = len(self.sessions) - self.max_sessions
        if excess <= 0:
            return
        for session_id, entry in list(self.sessions.items()):
            if excess <= 0:
                break
            if entry.relay.state is SessionState.DISCONNECTED:
                del self.sessions[session_id]
                excess -= 1
                logger.debug(f"Evicted session {session_id} ({entry.relay.name})")

    def get_session(self, session_id: str) -> SessionEntry:
        entry = self.sessions.get(session_id)
        if entry is None:
            raise ValueError(f"No session with id {session_id}")
        return entry

    def broadcast(self, event):
        data = asdict(event)
        for q in self.subscribers:
            try:
                q.put_nowait(data)
            except asyncio.QueueFull:
                pass  # Drop event if subscriber is too slow

    async def subscribe(self) -> asyncio.Queue:
        q = asyncio.Queue(maxsize=100)
        self.subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self.subscribers:
            self.subscribers.remove(q)

registry = SessionRegistry()

class TCPProxy:
    def __init__(self, config: ProxyConfig):
        self.config = config
        self.server = None
        self.relays: List[LiveRelay] = []

    async def start(self):
        self.server = await asyncio.start_server(
            self.handle_client, '0.0.0.0', self.config.local_port
        )
        registry.register_proxy(self.config)
        logger.info(f"Proxy '{self.config.name}' listening on {self.config.local_port} -> {self.config.target_host}:{self.config.target_port}")

        # Keep serving in the background
        self.serve_task = asyncio.create_task(self.server.serve_forever())

    async def close(self):
        for relay in list(self.relays):
            relay.disconnect()
        if self.server:
            self.server.close()
            await self.server.wait_closed()
        if hasattr(self, 'serve_task'):
            self.serve_task.cancel()
            try:
                await self.serve_task
            except asyncio.CancelledError:
                pass
        logger.info(f"Proxy '{self.config.name}' stopped")

    async def handle_client(self, client_reader, client_writer):
        client = StreamConnection(client_reader, client_writer)
        logger.info(f"[{self.config.name}] New connection from {client.identity}")

        try:
            remote_reader, remote_writer = await asyncio.open_connection(
                self.config.target_host, self.config.target_port
            )
        except Exception as e:
            logger.error(f"Failed to connect to target: {e}")
            client_writer.close()
            return

        server = StreamConnection(remote_reader, remote_writer)
        try:
            relay = LiveRelay(client, server, LoopDispatcher(asyncio.get_running_loop()),
                              log=logging.getLogger(f"liverelay.proxy.{self.config.name}"))
        except RelaySetupError as e:
            logger.error(f"[{self.config.name}] {e}")
            client.disconnect()
            server.disconnect()
            return

        self.relays.append(relay)
        registry.add_session(self.config.name, relay)
        try:
            await asyncio.gather(client.wait_closed(), server.wait_closed())
        finally:
            self.relays.remove(relay)
            logger.info(f"[{self.config.name}] {relay.name}")

class ProxyEngine:
    def __init__(self):
        self.proxies: List[TCPProxy] = []

    async def add_proxy(self, local_port: int, target_host: str, target_port: int, name: str):
        config = ProxyConfig(local_port, target_host, target_port, name)
        proxy = TCPProxy(config)
        await proxy.start()
        self.proxies.append(proxy)
        return f"Proxy '{name}' started on port {local_port}"

    def get_proxy(self, local_port: int) -> Optional[TCPProxy]:
        for proxy in self.proxies:
            if proxy.config.local_port == local_port:
                return proxy
        return None

    async def remove_proxy(self, local_port: int):
        proxy = self.get_proxy(local_port)
        if proxy is None:
            raise ValueError(f"No proxy found on port {local_port}")
        await proxy.close()
        self.proxies.remove(proxy)
        if local_port in registry.active_proxies:
            del registry.active_proxies[local_port]
        return f"Proxy on port {local_port} stopped"

    async def stop_all_proxies(self):
        logger.info("Stopping all proxies...")
        if not self.proxies:
            return

        await asyncio.gather(*(p.close() for p in self.proxies), return_exceptions=True)
        self.proxies.clear()
        registry.active_proxies.clear()
        logger.info("All proxies stopped.")

    async def shutdown(self):
        await self.stop_all_proxies()
        logger.info("Engine shutdown complete.")

engine = ProxyEngine()

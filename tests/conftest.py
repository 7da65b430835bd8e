import pytest
import threading
import time
import uvicorn
from liverelay.app import app

class FakeOutput:
    def __init__(self):
        self.written = []
        self.flushes = 0
        self.fail = None

    def write(self, data: bytes):
        if self.fail is not None:
            raise self.fail
        self.written.append(data)

    def flush(self):
        self.flushes += 1

class FakeConnection:
    """In-memory connection that delivers events on whatever thread calls it."""
    def __init__(self, identity: str):
        self.identity = identity
        self.connected = True
        self.output = FakeOutput()
        self.data_handlers = []
        self.disconnect_handlers = []
        self.receiving = False
        self.disconnect_calls = 0
        self.fail_begin = None
        self._fired = False

    def on_data_received(self, handler):
        self.data_handlers.append(handler)
        return lambda: self.data_handlers.remove(handler)

    def on_disconnected(self, handler):
        self.disconnect_handlers.append(handler)
        return lambda: self.disconnect_handlers.remove(handler)

    def begin_receive(self):
        if self.fail_begin is not None:
            raise self.fail_begin
        self.receiving = True

    def disconnect(self):
        self.disconnect_calls += 1
        self.drop()

    def deliver(self, data: bytes):
        for handler in list(self.data_handlers):
            handler(data)

    def drop(self):
        """Simulates the peer going away."""
        self.connected = False
        self.receiving = False
        if self._fired:
            return
        self._fired = True
        for handler in list(self.disconnect_handlers):
            handler()

@pytest.fixture
def make_connection():
    return FakeConnection

@pytest.fixture
def client_conn():
    return FakeConnection("10.0.0.5:50123")

@pytest.fixture
def server_conn():
    return FakeConnection("10.0.0.1:44405")

@pytest.fixture(scope="session")
def server_url():
    """Starts the FastAPI server in a separate thread."""
    port = 8002
    config = uvicorn.Config(app, host="127.0.0.1", port=port, log_level="error")
    server = uvicorn.Server(config)

    thread = threading.Thread(target=server.run)
    thread.daemon = True
    thread.start()

    # Wait for server to boot
    time.sleep(2)
    return f"http://127.0.0.1:{port}"

@pytest.fixture(scope="session")
def echo_server():
    """Starts a threaded TCP echo server."""
    import socketserver

    class ThreadedTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
        allow_reuse_address = True
        daemon_threads = True

    class EchoHandler(socketserver.BaseRequestHandler):
        def handle(self):
            try:
                while True:
                    data = self.request.recv(1024)
                    if not data:
                        break
                    self.request.sendall(data)
            except Exception:
                pass

    port = 9999
    server = ThreadedTCPServer(('127.0.0.1', port), EchoHandler)

    thread = threading.Thread(target=server.serve_forever)
    thread.daemon = True
    thread.start()

    # Wait a bit for server to start
    time.sleep(1)

    yield port

    server.shutdown()
    server.server_close()

@pytest.fixture(autouse=True)
async def cleanup_engine():
    from liverelay.core import engine, registry
    # Run before test
    yield
    # Run after test
    await engine.stop_all_proxies()
    registry.sessions.clear()
    registry.subscribers.clear()

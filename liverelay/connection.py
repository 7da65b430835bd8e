"""
Connections.

`Connection` describes what the relay needs from each side of a relayed pair.
`StreamConnection` implements it on top of asyncio streams.
"""
import asyncio
import logging
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger("liverelay.connection")

READ_CHUNK_SIZE = 4096

DataHandler = Callable[[bytes], None]
DisconnectHandler = Callable[[], None]

class Output(Protocol):
    def write(self, data: bytes) -> None:
        ...

    def flush(self) -> None:
        """Starts flushing queued bytes. Must not block."""
        ...

class Connection(Protocol):
    """Capabilities the relay expects from a connection."""

    @property
    def identity(self) -> str:
        ...

    @property
    def connected(self) -> bool:
        ...

    @property
    def output(self) -> Output:
        ...

    def on_data_received(self, handler: DataHandler) -> Callable[[], None]:
        """Registers a handler for incoming bytes; returns a function removing it."""
        ...

    def on_disconnected(self, handler: DisconnectHandler) -> Callable[[], None]:
        """Registers a handler fired once when the connection goes down."""
        ...

    def disconnect(self) -> None:
        ...

    def begin_receive(self) -> None:
        ...

def _remover(handlers: list, handler) -> Callable[[], None]:
    def remove():
        if handler in handlers:
            handlers.remove(handler)
    return remove

class StreamOutput:
    def __init__(self, connection: "StreamConnection"):
        self._connection = connection

    def write(self, data: bytes) -> None:
        writer = self._connection.writer
        if not self._connection.connected or writer.is_closing():
            raise ConnectionResetError(f"{self._connection.identity} is closed")
        writer.write(data)

    def flush(self) -> None:
        task = asyncio.ensure_future(self._connection.writer.drain())
        task.add_done_callback(self._flushed)

    def _flushed(self, task: asyncio.Future):
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"[{self._connection.identity}] Flush failed: {task.exception()}")

class StreamConnection:
    """Connection backed by an asyncio StreamReader/StreamWriter pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        peer = writer.get_extra_info('peername')
        self._identity = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        self._output = StreamOutput(self)
        self._data_handlers: List[DataHandler] = []
        self._disconnect_handlers: List[DisconnectHandler] = []
        self._receive_task: Optional[asyncio.Task] = None
        self._connected = True
        self._closed = asyncio.Event()

    def __str__(self) -> str:
        return self._identity

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def output(self) -> StreamOutput:
        return self._output

    def on_data_received(self, handler: DataHandler) -> Callable[[], None]:
        self._data_handlers.append(handler)
        return _remover(self._data_handlers, handler)

    def on_disconnected(self, handler: DisconnectHandler) -> Callable[[], None]:
        self._disconnect_handlers.append(handler)
        return _remover(self._disconnect_handlers, handler)

    def begin_receive(self) -> None:
        if self._receive_task is not None:
            raise RuntimeError(f"{self._identity} is already receiving")
        if not self._connected:
            raise ConnectionResetError(f"{self._identity} is closed")
        self._receive_task = asyncio.get_running_loop().create_task(self._receive_loop())

    async def _receive_loop(self):
        try:
            while True:
                data = await self.reader.read(READ_CHUNK_SIZE)
                if not data:
                    break
                for handler in list(self._data_handlers):
                    try:
                        handler(data)
                    except Exception as e:
                        logger.error(f"[{self._identity}] Data handler failed: {e}")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"[{self._identity}] Connection closed/error: {e}")
        finally:
            self._close()

    def disconnect(self) -> None:
        if not self._connected:
            return
        task = self._receive_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._close()

    def _close(self):
        if not self._connected:
            return
        self._connected = False
        self.writer.close()
        self._closed.set()
        for handler in list(self._disconnect_handlers):
            try:
                handler()
            except Exception as e:
                logger.error(f"[{self._identity}] Disconnect handler failed: {e}")

    async def wait_closed(self):
        await self._closed.wait()

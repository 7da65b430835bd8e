"""
Relay Controller.

A `LiveRelay` is a man-in-the-middle between an already established client
connection and server connection. It forwards every chunk it receives to the
other side unmodified, captures it in a `PacketCaptureLog` and tears both
sides down when either of them goes away.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .capture import CapturedRecord, Direction, PacketCaptureLog
from .connection import Connection
from .disconnect import DisconnectCoordinator, SessionState, Side
from .dispatch import Dispatch, NotificationBridge

logger = logging.getLogger("liverelay.relay")

DISCONNECTED_MARKER = " [Disconnected]"

RecordHandler = Callable[["LiveRelay", CapturedRecord], None]
NameHandler = Callable[["LiveRelay", str], None]

class RelaySetupError(Exception):
    """Raised when a relay could not be wired to its connections."""

class LiveRelay:
    def __init__(self, client_connection: Connection, server_connection: Connection,
                 dispatch: Dispatch, log: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.client_connection = client_connection
        self.server_connection = server_connection
        self.records = PacketCaptureLog()
        self.started_at = datetime.now(timezone.utc)
        self._clock = clock
        self.start_timestamp = clock()
        self._bridge = NotificationBridge(dispatch)
        self._logger = log or logger
        self._record_handlers: List[RecordHandler] = []
        self._name_handlers: List[NameHandler] = []
        self._client_name = client_connection.identity
        self._name = self._client_name
        self._coordinator = DisconnectCoordinator(
            client_connection, server_connection, self._terminated, self._logger
        )
        self.records.add_listener(self._record_appended)
        self._wire()

    def _wire(self):
        unsubscribes = []
        receiving = []
        try:
            unsubscribes.append(self.client_connection.on_data_received(self.send_to_server))
            unsubscribes.append(self.server_connection.on_data_received(self.send_to_client))
            unsubscribes.append(self.client_connection.on_disconnected(
                lambda: self._coordinator.connection_lost(Side.CLIENT)))
            unsubscribes.append(self.server_connection.on_disconnected(
                lambda: self._coordinator.connection_lost(Side.SERVER)))
            self._logger.info(f"[{self._name}] LiveRelay initialized.")
            for connection in (self.client_connection, self.server_connection):
                connection.begin_receive()
                receiving.append(connection)
        except Exception as e:
            for unsubscribe in unsubscribes:
                unsubscribe()
            for connection in receiving:
                connection.disconnect()
            self._logger.error(f"[{self._name}] Failed to initialize relay: {e}")
            raise RelaySetupError(f"Could not relay {self._client_name}: {e}") from e

    @property
    def name(self) -> str:
        return self._name

    @name.setter
    def name(self, value: str):
        if self._name != value:
            self._name = value
            for handler in list(self._name_handlers):
                self._notify(lambda handler=handler: handler(self, value))

    @property
    def state(self) -> SessionState:
        return self._coordinator.state

    @property
    def is_connected(self) -> bool:
        return self.client_connection.connected and self.server_connection.connected

    def on_record_captured(self, handler: RecordHandler):
        self._record_handlers.append(handler)

    def on_name_changed(self, handler: NameHandler):
        self._name_handlers.append(handler)

    def disconnect(self):
        """Disconnects the server connection and therefore indirectly also the client."""
        self.server_connection.disconnect()

    def send_to_server(self, data: bytes):
        self._forward(bytes(data), Direction.CLIENT_TO_SERVER)

    def send_to_client(self, data: bytes):
        self._forward(bytes(data), Direction.SERVER_TO_CLIENT)

    def _forward(self, data: bytes, direction: Direction):
        if not self._coordinator.is_active:
            self._logger.debug(f"[{self._name}] Dropping {len(data)} bytes {direction.value}, relay is {self.state.value}")
            return

        if direction is Direction.CLIENT_TO_SERVER:
            target, side = self.server_connection, Side.SERVER
        else:
            target, side = self.client_connection, Side.CLIENT

        try:
            target.output.write(data)
            target.output.flush()
        except Exception as e:
            self._logger.warning(f"[{self._name}] Write to {side.value} failed: {e}")
            try:
                target.disconnect()
            except Exception as e:
                self._logger.warning(f"[{self._name}] Failed to disconnect {side.value}: {e}")
            self._coordinator.connection_lost(side)
            return

        record = CapturedRecord(self._clock() - self.start_timestamp, data, direction)
        self._logger.debug(f"[{self._name}] {record}")
        self.records.append(record)

    def _record_appended(self, index: int, record: CapturedRecord):
        for handler in list(self._record_handlers):
            self._notify(lambda handler=handler: handler(self, record))

    def _notify(self, action):
        # Observer and dispatch failures must not reach the connection's receive loop
        try:
            self._bridge.notify(action)
        except Exception as e:
            self._logger.error(f"[{self._name}] Notification failed: {e}")

    def _terminated(self, side: Side):
        self.name = self._client_name + DISCONNECTED_MARKER

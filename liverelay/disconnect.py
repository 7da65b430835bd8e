"""
Disconnect Coordinator.

Losing either side of a relayed pair closes the other side. The coordinator
makes sure that happens exactly once per session, however many disconnect
signals arrive and from which threads.
"""
import logging
import threading
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger("liverelay.disconnect")

class Side(Enum):
    CLIENT = "client"
    SERVER = "server"

    @property
    def other(self) -> "Side":
        return Side.SERVER if self is Side.CLIENT else Side.CLIENT

class SessionState(Enum):
    ACTIVE = "active"
    TEARING_DOWN = "tearing_down"
    DISCONNECTED = "disconnected"

class DisconnectCoordinator:
    """Runs the disconnect cascade for one client/server pair.

    The first `connection_lost` call wins: it disconnects the counterpart,
    calls `on_terminated` with the side that went away first and moves the
    session to the terminal state. Every later call is ignored, including
    the echo fired by the counterpart's own disconnect.
    """
    def __init__(self, client, server, on_terminated: Callable[[Side], None],
                 log: Optional[logging.Logger] = None):
        self._connections = {Side.CLIENT: client, Side.SERVER: server}
        self._on_terminated = on_terminated
        self._log = log or logger
        self._lock = threading.Lock()
        self._state = SessionState.ACTIVE
        self._initiator: Optional[Side] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    @property
    def initiator(self) -> Optional[Side]:
        return self._initiator

    def connection_lost(self, side: Side) -> None:
        with self._lock:
            if self._state is not SessionState.ACTIVE:
                self._log.debug(f"Ignoring {side.value} disconnect, session is {self._state.value}")
                return
            self._state = SessionState.TEARING_DOWN
            self._initiator = side

        self._log.info(f"The {side.value} connection closed.")
        counterpart = self._connections[side.other]
        try:
            # May re-enter connection_lost() for the other side; that call is a no-op.
            counterpart.disconnect()
        except Exception as e:
            self._log.warning(f"Failed to disconnect {side.other.value}: {e}")

        try:
            self._on_terminated(side)
        finally:
            with self._lock:
                self._state = SessionState.DISCONNECTED

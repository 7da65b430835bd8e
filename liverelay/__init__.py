"""
LiveRelay - man-in-the-middle relay and traffic capture.

LiveRelay sits between an already connected client and server, forwards every byte
unmodified in both directions and records a time-stamped capture log of what passed
through. It ships a TCP proxy host with a REST/WebSocket API and an MCP server interface.
"""
from .capture import CapturedRecord, Direction, PacketCaptureLog
from .disconnect import DisconnectCoordinator, SessionState, Side
from .dispatch import LoopDispatcher, NotificationBridge, immediate_dispatch
from .relay import DISCONNECTED_MARKER, LiveRelay, RelaySetupError

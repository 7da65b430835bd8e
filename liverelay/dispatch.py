"""
Change Notification Bridge.

The relay is driven by I/O callbacks, while its observers may need to be
notified on a specific execution context (an event loop, a UI thread). The
host hands in a dispatch function and every notification goes through it.
"""
import asyncio
from typing import Callable

Action = Callable[[], None]
Dispatch = Callable[[Action], None]

def immediate_dispatch(action: Action) -> None:
    """Runs the action right away on the calling thread."""
    action()

class LoopDispatcher:
    """Dispatch function that runs actions on an asyncio event loop.

    Safe to call from any thread. Actions submitted from one thread run in
    submission order.
    """
    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop

    def __call__(self, action: Action) -> None:
        self.loop.call_soon_threadsafe(action)

class NotificationBridge:
    def __init__(self, dispatch: Dispatch):
        self._dispatch = dispatch

    def notify(self, action: Action) -> None:
        # Only call this once the reported change is already visible.
        self._dispatch(action)

"""
Packet Capture Log.

An append-only, thread-safe record of every chunk of bytes the relay forwarded,
with its direction and the time it passed through relative to session start.
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, List, Tuple

logger = logging.getLogger("liverelay.capture")

class Direction(Enum):
    CLIENT_TO_SERVER = "C->S"
    SERVER_TO_CLIENT = "S->C"

@dataclass(frozen=True)
class CapturedRecord:
    relative_timestamp: float  # seconds since session start
    payload: bytes
    direction: Direction

    @property
    def to_server(self) -> bool:
        return self.direction is Direction.CLIENT_TO_SERVER

    def hex(self) -> str:
        return self.payload.hex(' ')

    def __str__(self) -> str:
        return f"{self.direction.value} {len(self.payload)} bytes: {self.hex()}"

RecordListener = Callable[[int, CapturedRecord], None]

class PacketCaptureLog:
    """Ordered, observable log of captured records.

    Appends may come from two threads at once (one per relayed direction), so
    the list is only touched under a lock. Listeners run after the lock is
    released, once per appended record.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._records: List[CapturedRecord] = []
        self._listeners: List[RecordListener] = []

    def append(self, record: CapturedRecord) -> int:
        """Appends a record and notifies listeners.

        Args:
            record: The record to add at the end of the log.

        Returns:
            The index the record was stored at.
        """
        with self._lock:
            self._records.append(record)
            index = len(self._records) - 1
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(index, record)
            except Exception as e:
                logger.error(f"Capture listener failed on record {index}: {e}")
        return index

    def add_listener(self, listener: RecordListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def snapshot(self) -> Tuple[CapturedRecord, ...]:
        with self._lock:
            return tuple(self._records)

    def __iter__(self) -> Iterator[CapturedRecord]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

"""
Exports ``ZkClient``, the coordination client used by registry nodes: a
``KazooClient`` whose connection states and watches are turned into one
ordered stream of ``WatchEvent`` objects.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from kazoo.client import KazooClient, KazooState
from kazoo.exceptions import ConnectionClosedError, ConnectionLoss, SessionExpiredError
from kazoo.protocol.states import EventType as KazooEventType
from rich.console import Console

from .errors import CoordinationUnavailable

__all__ = ["ZkClient", "EventType", "WatchEvent"]

console = Console()


class EventType(str, Enum):
    CREATED = "created"
    DELETED = "deleted"
    CHANGED = "changed"
    CHILDREN = "children"
    # Connection states
    CONNECTED = "connected"
    CONNECTION_LOST = "connection_lost"
    SESSION_EXPIRED = "session_expired"


@dataclass(frozen=True)
class WatchEvent:
    type: EventType
    path: str | None = None
    data: str | None = None


Listener = Callable[[WatchEvent], None]

_DATA_EVENTS = {
    KazooEventType.CREATED: EventType.CREATED,
    KazooEventType.DELETED: EventType.DELETED,
    KazooEventType.CHANGED: EventType.CHANGED,
}

_STATE_EVENTS = {
    KazooState.CONNECTED: EventType.CONNECTED,
    KazooState.SUSPENDED: EventType.CONNECTION_LOST,
    KazooState.LOST: EventType.SESSION_EXPIRED,
}

_UNAVAILABLE = (ConnectionLoss, SessionExpiredError, ConnectionClosedError)


class ZkClient:
    """
    Ordered event delivery over a ``KazooClient``.

    Note:
        Kazoo reports connection states on its connection thread and watch
        triggers on its callback thread, where blocking is not allowed. Both
        are queued here and handed to the listeners, in arrival order, by one
        dispatcher thread that may freely call back into ZooKeeper.

        Kazoo moves to ``SUSPENDED`` once the server has been silent for two
        thirds of the session timeout, before the server can expire the
        session, so ``CONNECTION_LOST`` always precedes the loss of this
        client's ephemeral keys.

    :param client: Unstarted kazoo client; owned (started, stopped and closed)
        by this object.
    :param name: Tag used in log lines.
    :param timeout: Seconds to wait for the connection and for every request.
    """

    def __init__(self, client: KazooClient, name: str = "zk", timeout: float = 5.0):
        self.client = client
        self.name: str = name
        self.timeout: float = timeout

        self._listeners: list[Listener] = []
        self._events: queue.Queue[WatchEvent | None] = queue.Queue()
        self._closed = threading.Event()
        self._dispatcher: threading.Thread | None = None

    # ----------------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------------
    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self) -> None:
        """
        Connect to ZooKeeper and start the dispatcher thread.

        :raises CoordinationUnavailable: If no session is established within
            ``timeout``.
        """
        self._closed.clear()
        try:
            self.client.start(timeout=self.timeout)
        except self.client.handler.timeout_exception as e:
            self._closed.set()
            self.client.stop()
            self.client.close()
            raise CoordinationUnavailable(f"{self.name} could not connect: {e}") from e
        self.client.add_listener(self._on_state)
        console.log(f"[{self.name}] Session {self.session_id} opened")
        self._dispatcher = threading.Thread(target=self._dispatch_loop, daemon=True)
        self._dispatcher.start()

    def close(self) -> None:
        """
        Close the session, which deletes its ephemeral keys, and stop the
        dispatcher.

        :return: None
        """
        if self._closed.is_set():
            return
        self._closed.set()
        self.client.remove_listener(self._on_state)
        try:
            self.client.stop()
        finally:
            self.client.close()
        self._events.put(None)
        if self._dispatcher and self._dispatcher is not threading.current_thread():
            self._dispatcher.join(timeout=1)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def session_id(self) -> int | None:
        client_id = self.client.client_id
        return client_id[0] if client_id else None

    # ----------------------------------------------------------------------
    # Watches
    # ----------------------------------------------------------------------
    def watch_data(self, path: str) -> None:
        """
        Report creation, change and deletion of ``path``.

        Note:
            The watch survives deletion of the key and reconnects; it ends
            when the client is closed.
        """
        def on_change(data, stat, event):
            if self._closed.is_set():
                return False
            kind = _DATA_EVENTS.get(event.type) if event is not None else None
            if kind is not None:
                self._enqueue(WatchEvent(kind, path, data.decode() if data is not None else None))

        self.client.DataWatch(path, on_change)

    def watch_children(self, path: str) -> None:
        """
        Report every change to the set of children of ``path``, which must
        exist.
        """
        def on_change(children, event):
            if self._closed.is_set():
                return False
            if event is not None:
                self._enqueue(WatchEvent(EventType.CHILDREN, path))

        self.client.ChildrenWatch(path, on_change, send_event=True)

    def defer(self, event: WatchEvent, delay: float) -> None:
        """
        Deliver ``event`` again after ``delay`` seconds, unless the client
        has been closed by then.
        """
        timer = threading.Timer(delay, self._enqueue, args=(event,))
        timer.daemon = True
        timer.start()

    # ----------------------------------------------------------------------
    # Event delivery
    # ----------------------------------------------------------------------
    def _on_state(self, state: str) -> None:
        kind = _STATE_EVENTS.get(state)
        if kind is not None:
            self._enqueue(WatchEvent(kind))

    def _enqueue(self, event: WatchEvent) -> None:
        if not self._closed.is_set():
            self._events.put(event)

    def _dispatch_loop(self) -> None:
        while True:
            event = self._events.get()
            if event is None or self._closed.is_set():
                return
            if event.type in (EventType.CONNECTION_LOST, EventType.SESSION_EXPIRED):
                console.log(f"[{self.name}] ZooKeeper {event.type.value}")
            elif event.type == EventType.CONNECTED:
                console.log(f"[{self.name}] ZooKeeper connected, session {self.session_id}")
            self._deliver(event)

    def _deliver(self, event: WatchEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                console.log(f"[{self.name}] Listener failed on {event.type.value} {event.path}: {e!r}")

    # ----------------------------------------------------------------------
    # Data operations
    # ----------------------------------------------------------------------
    def _wait(self, result, action: str):
        try:
            return result.get(timeout=self.timeout)
        except self.client.handler.timeout_exception as e:
            raise CoordinationUnavailable(f"{action} timed out after {self.timeout}s") from e
        except _UNAVAILABLE as e:
            raise CoordinationUnavailable(f"{action} failed: {e!r}") from e

    def create(self, path: str, data: str, ephemeral: bool = False, makepath: bool = False) -> None:
        self._wait(
            self.client.create_async(path, data.encode(), ephemeral=ephemeral, makepath=makepath),
            f"create {path}",
        )

    def ensure_path(self, path: str) -> None:
        self._wait(self.client.ensure_path_async(path), f"ensure {path}")

    def get(self, path: str) -> tuple[str, int]:
        """
        Read a key.

        :return: ``(data, version)``.
        :raises NoNodeError: If the key does not exist.
        """
        data, stat = self._wait(self.client.get_async(path), f"get {path}")
        return (data or b"").decode(), stat.version

    def set(self, path: str, data: str, version: int = -1) -> int:
        """
        Overwrite a key, conditioned on ``version`` unless it is ``-1``.

        :return: The key's new version.
        :raises BadVersionError: If the key changed since ``version``.
        """
        stat = self._wait(self.client.set_async(path, data.encode(), version), f"set {path}")
        return stat.version

    def delete(self, path: str, version: int = -1) -> None:
        self._wait(self.client.delete_async(path, version), f"delete {path}")

    def children(self, path: str) -> list[str]:
        return sorted(self._wait(self.client.get_children_async(path), f"children of {path}"))

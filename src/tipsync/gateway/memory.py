"""In-process remote store used for local-only mode and tests."""
import copy
import itertools
import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from tipsync.gateway import paths
from tipsync.gateway.base import (
    Completion,
    ErrorCallback,
    RemoteGateway,
    SnapshotCallback,
    Subscription,
)
from tipsync.models.sync_models import Snapshot

logger = logging.getLogger(__name__)


class GatewayUnavailableError(ConnectionError):
    """The store could not be reached."""


class InMemoryGateway(RemoteGateway):
    """A tree of plain values with subscription fan-out.

    With ``auto_deliver=False`` snapshot deliveries and one-shot reads are
    queued until :meth:`deliver_pending` runs, which lets callers observe
    stale or reordered snapshots the way a real network would produce them.
    """

    def __init__(self, auto_deliver: bool = True):
        self.auto_deliver = auto_deliver
        self.offline = False
        self.writes: List[Tuple[str, Any]] = []
        self._tree: Dict[str, Any] = {}
        self._subscribers: Dict[int, Tuple[str, SnapshotCallback]] = {}
        self._ids = itertools.count(1)
        self._queue: Deque[Callable[[], None]] = deque()
        self._failures: Deque[Exception] = deque()
        self._lock = threading.RLock()

    def get(self, path: str) -> Any:
        """Read a copy of the value stored at path."""
        with self._lock:
            node: Any = self._tree
            for part in paths.split(path):
                if not isinstance(node, dict) or part not in node:
                    return None
                node = node[part]
            return copy.deepcopy(node)

    def fail_writes(self, count: int = 1, error: Optional[Exception] = None) -> None:
        """Make the next count writes fail."""
        for _ in range(count):
            self._failures.append(error or GatewayUnavailableError("write failed"))

    def subscribe(self, path: str, callback: SnapshotCallback) -> Subscription:
        with self._lock:
            sub_id = next(self._ids)
            self._subscribers[sub_id] = (path, callback)

        def cancel() -> None:
            with self._lock:
                self._subscribers.pop(sub_id, None)

        subscription = Subscription(path, cancel)
        self._dispatch(lambda: subscription.active and callback(Snapshot(path, self.get(path))))
        return subscription

    def write_value(self, path: str, value: Any, completion: Optional[Completion] = None) -> None:
        error: Optional[Exception] = None
        with self._lock:
            if self.offline:
                error = GatewayUnavailableError("store is offline")
            elif self._failures:
                error = self._failures.popleft()
            else:
                self._set(path, copy.deepcopy(value))
                self.writes.append((path, copy.deepcopy(value)))
                targets = [(p, cb) for p, cb in self._subscribers.values() if paths.overlaps(p, path)]

        if error is not None:
            logger.debug(f"Write to {path} failed: {error}")
            if completion:
                completion(error)
            return

        for sub_path, callback in targets:
            self._dispatch(lambda p=sub_path, cb=callback: cb(Snapshot(p, self.get(p))))
        if completion:
            completion(None)

    def set_remote(self, path: str, value: Any) -> None:
        """Write as another device would, bypassing failure injection."""
        offline, self.offline = self.offline, False
        failures, self._failures = self._failures, deque()
        try:
            self.write_value(path, value)
        finally:
            self.offline = offline
            self._failures = failures

    def observe_once(
        self,
        path: str,
        callback: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        if self.offline:
            if on_error:
                on_error(GatewayUnavailableError("store is offline"))
            return
        self._dispatch(lambda: callback(Snapshot(path, self.get(path))))

    def deliver_pending(self, limit: int = 10000) -> int:
        """Run queued deliveries, including ones they enqueue. Returns the count."""
        delivered = 0
        while self._queue and delivered < limit:
            self._queue.popleft()()
            delivered += 1
        return delivered

    @property
    def queued(self) -> int:
        return len(self._queue)

    def _dispatch(self, delivery: Callable[[], Any]) -> None:
        if self.auto_deliver:
            delivery()
        else:
            self._queue.append(delivery)

    def _set(self, path: str, value: Any) -> None:
        parts = paths.split(path)
        if not parts:
            self._tree = value if isinstance(value, dict) else {}
            return
        node = self._tree
        trail = []
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if value is None:
                    return
                child = {}
                node[part] = child
            trail.append((node, part))
            node = child
        if value is None:
            node.pop(parts[-1], None)
            # Prune parents left empty by the delete
            for parent, key in reversed(trail):
                if parent[key]:
                    break
                del parent[key]
        else:
            node[parts[-1]] = value

"""Interface of the remote real-time store."""
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from tipsync.models.sync_models import Snapshot

SnapshotCallback = Callable[[Snapshot], None]
Completion = Callable[[Optional[Exception]], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    """Handle returned by subscribe; cancel() stops deliveries."""

    def __init__(self, path: str, cancel: Callable[[], None]):
        self.path = path
        self._cancel = cancel
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._cancel()


class RemoteGateway(ABC):
    """Subscribe/write/read primitives of the remote store.

    Delivery is eventual and ordering across paths is best effort.
    Callbacks may run on any thread, including inside the calling method.
    """

    @abstractmethod
    def subscribe(self, path: str, callback: SnapshotCallback) -> Subscription:
        """Deliver the value at path now and after every change below it."""
        raise NotImplementedError("Subclasses must implement this method")

    @abstractmethod
    def write_value(self, path: str, value: Any, completion: Optional[Completion] = None) -> None:
        """Replace the value at path; None deletes it. completion gets the error, if any."""
        raise NotImplementedError("Subclasses must implement this method")

    @abstractmethod
    def observe_once(
        self,
        path: str,
        callback: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        """Deliver the current value at path once."""
        raise NotImplementedError("Subclasses must implement this method")

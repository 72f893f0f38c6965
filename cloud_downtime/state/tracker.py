"""
In-memory record of the last run state applied to each group.
"""
import threading
from typing import Dict, Optional

from ..services.models import DesiredState


class GroupStateTracker:
    """Remembers the handled state per group so ticks do not re-issue actions.

    Nothing is persisted; after a restart the first tick may repeat one
    start or stop, which the adapters' precondition filter turns into a no-op.
    """

    def __init__(self):
        self._handled: Dict[str, DesiredState] = {}
        self._lock = threading.Lock()

    def get(self, group_name: str) -> Optional[DesiredState]:
        with self._lock:
            return self._handled.get(group_name)

    def set(self, group_name: str, state: DesiredState) -> None:
        with self._lock:
            self._handled[group_name] = state

    def clear(self, group_name: str) -> None:
        with self._lock:
            self._handled.pop(group_name, None)

    def snapshot(self) -> Dict[str, DesiredState]:
        with self._lock:
            return dict(self._handled)

from typing import Dict, List, Optional
from slicing.models.enums import QueuePriority


class LeaseTracker:
    """
    Receipt handles of messages currently in our care, by queue of origin.

    Messages are received with a short visibility timeout which is renewed
    while they are processed, so a crashed worker only hides a message for
    one renewal window instead of a long default timeout.
    """

    def __init__(self):
        self._handles: Dict[str, QueuePriority] = {}

    def track(self, handle: str, priority: QueuePriority) -> bool:
        if not handle:
            return False
        added = handle not in self._handles
        self._handles[handle] = priority
        return added

    def untrack(self, handle: str) -> Optional[QueuePriority]:
        """Returns the queue of origin, or None when the handle was not tracked."""
        if not handle:
            return None
        return self._handles.pop(handle, None)

    def is_tracked(self, handle: str) -> bool:
        return handle in self._handles

    def snapshot(self) -> Dict[QueuePriority, List[str]]:
        grouped: Dict[QueuePriority, List[str]] = {}
        for handle, priority in list(self._handles.items()):
            grouped.setdefault(priority, []).append(handle)
        return grouped

    def __len__(self) -> int:
        return len(self._handles)

import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from data_classes import ScanMode
from scan_errors import ScanInProgressError

logger = logging.getLogger(__name__)


@dataclass
class RunHandle:
    target_id: str
    mode: ScanMode
    started_at: float = field(default_factory=time.time)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class ScanRegistry:
    """Table of the scans currently running, at most one per target"""

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: Dict[str, RunHandle] = {}

    def acquire(self, target_id: str, mode: ScanMode) -> RunHandle:
        with self._lock:
            active = self._runs.get(target_id)
            if active is not None:
                raise ScanInProgressError(target_id, active.mode.value)
            handle = RunHandle(target_id=target_id, mode=mode)
            self._runs[target_id] = handle
            return handle

    def release(self, handle: RunHandle) -> None:
        with self._lock:
            if self._runs.get(handle.target_id) is handle:
                del self._runs[handle.target_id]

    def get(self, target_id: str) -> Optional[RunHandle]:
        with self._lock:
            return self._runs.get(target_id)

    def cancel(self, target_id: str) -> bool:
        """asks the running scan to stop after the commit it is working on"""
        handle = self.get(target_id)
        if handle is None:
            return False
        logger.info(f"Cancelling {handle.mode.value} scan of {target_id}")
        handle.cancel_event.set()
        return True

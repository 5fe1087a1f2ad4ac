from dataclasses import dataclass
from typing import Callable

from .errors import QueueUnavailable
from .queue import QueueService


@dataclass
class HealthSnapshot:
    waiting: int
    active: int
    completed: int
    failed: int
    store_connected: bool
    browser_ready: bool
    workers: int = 0

    def to_response(self, node: str) -> dict:
        return {
            "status": "ACTIVE" if self.store_connected else "OFFLINE",
            "redis": "CONNECTED" if self.store_connected else "OFFLINE",
            "worker": "SYNCHRONIZED",
            "node": node,
            "browser": "READY" if self.browser_ready else "MISSING",
            "workers": self.workers,
            "queue": {
                "waiting": self.waiting,
                "active": self.active,
                "completed": self.completed,
                "failed": self.failed,
            },
        }


class HealthReporter:
    """Builds a HealthSnapshot on demand; nothing is cached or stored."""

    def __init__(self, queue: QueueService, browser_ready: Callable[[], bool]):
        self.queue = queue
        self._browser_ready = browser_ready

    def snapshot(self) -> HealthSnapshot:
        browser_ready = self._browser_ready()
        if not self.queue.ping():
            return HealthSnapshot(0, 0, 0, 0, store_connected=False, browser_ready=browser_ready)
        try:
            counts = self.queue.snapshot()
            workers = self.queue.live_workers()
        except QueueUnavailable:
            return HealthSnapshot(0, 0, 0, 0, store_connected=False, browser_ready=browser_ready)
        return HealthSnapshot(
            waiting=counts["waiting"],
            active=counts["active"],
            completed=counts["completed"],
            failed=counts["failed"],
            store_connected=True,
            browser_ready=browser_ready,
            workers=workers,
        )

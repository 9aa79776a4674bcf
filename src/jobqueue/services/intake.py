from __future__ import annotations

import queue
from typing import Optional

from ..core.models import QueuedJob


class IntakeQueue:
    """Hàng đợi FIFO có giới hạn giữa bước nhận job và bước chạy job."""

    def __init__(self, capacity: int = 100):
        if capacity <= 0:
            raise ValueError("queue capacity must be positive")
        self.capacity = capacity
        self._q: "queue.Queue[QueuedJob]" = queue.Queue(maxsize=capacity)

    def enqueue(self, job: QueuedJob, timeout: Optional[float] = None) -> None:
        # block khi đầy; raise queue.Full nếu hết timeout
        self._q.put(job, timeout=timeout)

    def dequeue(self, timeout: Optional[float] = None) -> QueuedJob:
        # raise queue.Empty nếu hết timeout
        return self._q.get(timeout=timeout)

    def __len__(self) -> int:
        return self._q.qsize()

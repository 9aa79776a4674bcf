from __future__ import annotations

import threading
from typing import Dict, List, Optional

import structlog

from ..core.models import RunningJob

log = structlog.get_logger(__name__)


class RunningRegistry:
    """
    Bảng job_id -> RunningJob của các process đang chạy.
    Lock chỉ giữ trong lúc thêm/tra/xóa, không bao giờ giữ khi spawn, wait hay kill.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[str, RunningJob] = {}

    def register(self, handle: RunningJob) -> None:
        with self._lock:
            self._jobs[handle.job_id] = handle

    def unregister(self, job_id: str) -> Optional[RunningJob]:
        with self._lock:
            return self._jobs.pop(job_id, None)

    def get(self, job_id: str) -> Optional[RunningJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def request_cancellation(self, job_id: str) -> bool:
        handle = self.get(job_id)
        if handle is None:
            return False
        log.info("job_cancel_requested", job_id=job_id)
        handle.token.cancel()
        return True

    def cancel_all(self) -> int:
        with self._lock:
            handles: List[RunningJob] = list(self._jobs.values())
        for h in handles:
            h.token.cancel()
        return len(handles)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

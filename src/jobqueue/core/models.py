from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED)


# IN_QUEUE -> FAILED là trường hợp spawn lỗi (bỏ qua IN_PROGRESS)
_TRANSITIONS = {
    JobStatus.IN_QUEUE: {JobStatus.IN_PROGRESS, JobStatus.FAILED},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELED: set(),
}


class InvalidTransition(RuntimeError):
    pass


class JobRecord(BaseModel):
    """
    Bản ghi meta.json của một job. id/args/mime_type/webhook/enqueued_at chỉ ghi một lần
    lúc tạo; chỉ status, pid và các mốc thời gian được phép thay đổi.
    """

    id: str = Field(frozen=True)
    args: List[str] = Field(frozen=True)
    mime_type: Optional[str] = Field(default=None, frozen=True)
    webhook: Optional[str] = Field(default=None, frozen=True)
    status: JobStatus = JobStatus.IN_QUEUE
    pid: Optional[int] = None
    enqueued_at: datetime = Field(frozen=True)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def transition(self, new: JobStatus) -> None:
        if new not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"{self.id}: {self.status.value} -> {new.value}")
        self.status = new

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


@dataclass
class QueuedJob:
    record: JobRecord
    input_path: Optional[Path] = None


class CancellationToken:
    """Cờ hủy một lần; lần cancel() đầu tiên gọi on_cancel (kill process)."""

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None):
        self._event = threading.Event()
        self._on_cancel = on_cancel

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        if self._on_cancel:
            self._on_cancel()


@dataclass
class RunningJob:
    job_id: str
    process: object  # subprocess.Popen
    token: CancellationToken = field(default_factory=CancellationToken)

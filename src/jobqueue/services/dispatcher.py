from __future__ import annotations

import queue
import threading
from typing import Optional

import structlog

from ..core.models import QueuedJob
from ..runner.supervisor import ProcessSupervisor
from .intake import IntakeQueue

log = structlog.get_logger(__name__)


class Dispatcher:
    """
    Lấy job từ IntakeQueue theo thứ tự FIFO và chạy mỗi job trên một thread riêng.
    max_concurrent=0: không giới hạn số job chạy đồng thời; >0: semaphore chặn
    việc bắt đầu job mới cho tới khi có slot trống.
    """

    def __init__(
        self,
        intake: IntakeQueue,
        supervisor: ProcessSupervisor,
        max_concurrent: int = 0,
        poll_interval: float = 0.2,
    ):
        self.intake = intake
        self.supervisor = supervisor
        self.poll_interval = poll_interval
        self._slots = threading.BoundedSemaphore(max_concurrent) if max_concurrent > 0 else None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._workers: set = set()
        self._workers_lock = threading.Lock()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="dispatcher", daemon=True)
        self._thread.start()
        log.info("dispatcher_started")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
        log.info("dispatcher_stopped")

    @property
    def active_count(self) -> int:
        with self._workers_lock:
            return len(self._workers)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                job = self.intake.dequeue(timeout=self.poll_interval)
            except queue.Empty:
                continue
            if not self._acquire_slot():
                log.warning("dispatcher_stopped_with_pending_job", job_id=job.record.id)
                return
            t = threading.Thread(target=self._execute, args=(job,), name=f"job-{job.record.id}", daemon=True)
            with self._workers_lock:
                self._workers.add(t)
            t.start()

    def _acquire_slot(self) -> bool:
        if self._slots is None:
            return True
        while not self._stop.is_set():
            if self._slots.acquire(timeout=self.poll_interval):
                return True
        return False

    def _execute(self, job: QueuedJob) -> None:
        try:
            self.supervisor.run(job)
        except Exception:
            # lỗi của một job không được làm chết dispatcher / server
            log.exception("job_execution_error", job_id=job.record.id)
        finally:
            if self._slots is not None:
                self._slots.release()
            with self._workers_lock:
                self._workers.discard(threading.current_thread())

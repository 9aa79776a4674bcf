from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from ..core.models import JobRecord, JobStatus, QueuedJob
from ..core.utils import job_urls, new_job_id, utcnow
from ..runner.supervisor import ProcessSupervisor
from ..settings import Settings
from .dispatcher import Dispatcher
from .intake import IntakeQueue
from .registry import RunningRegistry
from .storage import JobNotFound, MetadataStore, StorageError
from .webhook import WebhookNotifier

log = structlog.get_logger(__name__)


class AdmissionError(ValueError):
    pass


class JobService:
    """
    Orchestrator: ghép MetadataStore + IntakeQueue + Dispatcher + RunningRegistry + Webhook.
    Đây là các thao tác mà tầng HTTP gọi tới.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.command_prefix: Tuple[str, ...] = tuple(settings.command_prefix)

        self.store = MetadataStore(settings.jobs_dir, staging_dir=settings.staging_dir)
        self.intake = IntakeQueue(settings.queue_capacity)
        self.registry = RunningRegistry()
        self.notifier = WebhookNotifier(base_url=settings.base_url, timeout_s=settings.webhook_timeout_s)
        self.supervisor = ProcessSupervisor(self.store, self.registry, self.notifier)
        self.dispatcher = Dispatcher(self.intake, self.supervisor, max_concurrent=settings.max_concurrent_jobs)

    # ---------- lifecycle ----------

    def start(self) -> None:
        self.dispatcher.start()

    def stop(self) -> None:
        self.dispatcher.stop()
        n = self.registry.cancel_all()
        if n:
            log.info("running_jobs_cancelled_on_shutdown", count=n)

    # ---------- operations ----------

    def urls(self, job_id: str) -> Dict[str, str]:
        return job_urls(job_id, self.settings.base_url)

    def submit(
        self,
        args: Sequence[str],
        mime_type: Optional[str] = None,
        webhook: Optional[str] = None,
        payload: bytes = b"",
    ) -> Dict[str, str]:
        argv = [*self.command_prefix, *args]
        if not argv or not argv[0]:
            raise AdmissionError("args_required")

        job_id = new_job_id()
        record = JobRecord(
            id=job_id,
            args=argv,
            mime_type=mime_type or None,
            webhook=webhook or None,
            status=JobStatus.IN_QUEUE,
            enqueued_at=utcnow(),
        )
        # stage input trước: lỗi ở đây không để lại record IN_QUEUE mồ côi
        input_path = None
        try:
            if payload:
                input_path = self.store.stage_input(job_id, payload)
            self.store.create(record)
        except OSError as e:
            if input_path:
                input_path.unlink(missing_ok=True)
            log.error("job_admission_failed", job_id=job_id, error=str(e))
            raise StorageError(f"cannot_store_job:{e}") from e

        # record gửi vào queue là bản riêng của supervisor
        self.intake.enqueue(QueuedJob(record=record.model_copy(deep=True), input_path=input_path))
        log.info("job_enqueued", job_id=job_id, args=argv, has_input=input_path is not None)
        return {"id": job_id, **self.urls(job_id)}

    def list_jobs(self) -> List[Dict]:
        jobs = []
        for r in sorted(self.store.list(), key=lambda r: r.enqueued_at, reverse=True):
            urls = self.urls(r.id)
            jobs.append({
                "id": r.id,
                "args": r.args,
                "status": r.status.value,
                "result_url": urls["result_url"],
                "log_url": urls["log_url"],
                "enqueued_at": r.enqueued_at.isoformat(),
            })
        return jobs

    def get_status(self, job_id: str) -> JobRecord:
        return self.store.load(job_id)

    def result_file(self, job_id: str) -> Tuple[Path, str]:
        record = self.store.load(job_id)
        if record.status is not JobStatus.COMPLETED:
            raise JobNotFound(f"result_not_available:{job_id}")
        path = self.store.stdout_path(job_id)
        if not path.exists():
            raise JobNotFound(f"result_not_available:{job_id}")
        return path, record.mime_type or "application/octet-stream"

    def log_file(self, job_id: str) -> Path:
        path = self.store.stderr_path(job_id)
        if not path.is_file():
            raise JobNotFound(f"log_not_available:{job_id}")
        return path

    def cancel(self, job_id: str) -> bool:
        # job chưa chạy hoặc đã kết thúc: bỏ qua
        return self.registry.request_cancellation(job_id)

# src/jobqueue/runner/supervisor.py
from __future__ import annotations

import contextlib
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Optional

import structlog

from ..core.models import CancellationToken, JobRecord, JobStatus, QueuedJob, RunningJob
from ..core.utils import utcnow
from ..services.registry import RunningRegistry
from ..services.storage import MetadataStore
from ..services.webhook import WebhookNotifier

log = structlog.get_logger(__name__)


def _kill_group(proc: subprocess.Popen) -> bool:
    # process chạy trong session riêng (start_new_session) -> pgid == pid
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return False
    except PermissionError as e:
        log.warning("kill_denied", pid=proc.pid, error=str(e))
        return False
    return True


class ProcessGuard:
    """
    Chỉ kill khi process chưa thoát. wait() chờ process thoát mà chưa reap
    (WNOWAIT), đánh dấu exited dưới lock rồi mới reap: sau khi reap, pid/pgid
    có thể bị tái sử dụng nên không bao giờ được gửi signal nữa.
    """

    def __init__(self, proc: subprocess.Popen):
        self.proc = proc
        self._lock = threading.Lock()
        self.exited = False
        self.cancelled = False

    def kill(self, cancel: bool = True) -> None:
        with self._lock:
            if self.exited or self.proc.returncode is not None:
                return
            if _kill_group(self.proc) and cancel:
                self.cancelled = True

    def wait(self) -> int:
        try:
            os.waitid(os.P_PID, self.proc.pid, os.WEXITED | os.WNOWAIT)
        except ChildProcessError:
            pass
        with self._lock:
            self.exited = True
        return self.proc.wait()


def resolve_terminal(cancelled: bool, returncode: Optional[int], io_error: bool = False) -> JobStatus:
    if cancelled:
        return JobStatus.CANCELED
    if io_error or returncode != 0:
        return JobStatus.FAILED
    return JobStatus.COMPLETED


class ProcessSupervisor:
    """
    Chạy một job: spawn process, nối stdin/stdout/stderr, chờ process kết thúc
    và ghi trạng thái cuối. Là nơi duy nhất đổi status của job sau khi nhận.
    """

    def __init__(self, store: MetadataStore, registry: RunningRegistry, notifier: WebhookNotifier):
        self.store = store
        self.registry = registry
        self.notifier = notifier

    def run(self, job: QueuedJob) -> JobRecord:
        record = job.record
        jlog = log.bind(job_id=record.id)
        try:
            with contextlib.ExitStack() as stack:
                jlog.debug("running_command", args=record.args)
                try:
                    out = stack.enter_context(open(self.store.stdout_path(record.id), "wb"))
                    err = stack.enter_context(open(self.store.stderr_path(record.id), "wb"))
                    stdin = stack.enter_context(open(job.input_path, "rb")) if job.input_path else subprocess.DEVNULL
                    proc = subprocess.Popen(
                        record.args,
                        stdin=stdin,
                        stdout=out,
                        stderr=err,
                        start_new_session=True,
                    )
                except (OSError, ValueError) as e:
                    return self._spawn_failed(record, e)

                guard = ProcessGuard(proc)
                token = CancellationToken(guard.kill)
                self.registry.register(RunningJob(job_id=record.id, process=proc, token=token))
                returncode, io_error = self._supervise(record, guard)
        finally:
            if job.input_path:
                Path(job.input_path).unlink(missing_ok=True)

        record.completed_at = utcnow()
        record.pid = None
        record.transition(resolve_terminal(guard.cancelled, returncode, io_error))
        self._finish(record, returncode=returncode)
        return record

    def _supervise(self, record: JobRecord, guard: ProcessGuard):
        proc = guard.proc
        io_error = False
        try:
            record.pid = proc.pid
            record.started_at = utcnow()
            record.transition(JobStatus.IN_PROGRESS)
            self.store.save(record)
            log.info("job_started", job_id=record.id, pid=proc.pid)
            returncode = guard.wait()
        except OSError as e:
            log.error("job_io_error", job_id=record.id, error=str(e))
            io_error = True
            guard.kill(cancel=False)
            returncode = guard.wait()
        finally:
            self.registry.unregister(record.id)
        return returncode, io_error

    def _spawn_failed(self, record: JobRecord, error: Exception) -> JobRecord:
        now = utcnow()
        record.started_at = now
        record.completed_at = now
        record.transition(JobStatus.FAILED)
        log.warning("job_spawn_failed", job_id=record.id, args=record.args, error=str(error))
        self._finish(record, returncode=None)
        return record

    def _finish(self, record: JobRecord, returncode: Optional[int]) -> None:
        try:
            self.store.save(record)
        except OSError:
            log.exception("job_save_failed", job_id=record.id, status=record.status.value)
            return
        log.info("job_finished", job_id=record.id, status=record.status.value, returncode=returncode)
        self.notifier.notify(record)

# src/jobqueue/services/storage.py
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import List, Optional

import structlog
from pydantic import ValidationError

from ..core.models import JobRecord

log = structlog.get_logger(__name__)


class JobNotFound(ValueError):
    pass


class StorageError(RuntimeError):
    pass


class MetadataStore:
    """
    Lưu trữ job trên filesystem theo cấu trúc:
      jobs/<job_id>/
        ├─ meta.json    (JobRecord, ghi lại toàn bộ mỗi lần save)
        ├─ stdout.txt   (kết quả)
        └─ stderr.txt   (log)
    Input của job (nếu có) nằm ở thư mục tạm, không nằm trong jobs/<job_id>/.
    """

    META_FILE = "meta.json"
    STDOUT_FILE = "stdout.txt"
    STDERR_FILE = "stderr.txt"

    def __init__(self, jobs_dir: Path, staging_dir: Optional[Path] = None):
        # đảm bảo là absolute path
        self.jobs_dir = jobs_dir if jobs_dir.is_absolute() else jobs_dir.resolve()
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        self.staging_dir = Path(staging_dir) if staging_dir else Path(tempfile.gettempdir())

    # ---------- paths ----------

    def job_dir(self, job_id: str) -> Path:
        # id phải là một thành phần path đơn, không cho phép "../"
        if not job_id or job_id in (".", "..") or Path(job_id).name != job_id:
            raise JobNotFound(job_id)
        return self.jobs_dir / job_id

    def stdout_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / self.STDOUT_FILE

    def stderr_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / self.STDERR_FILE

    # ---------- records ----------

    def create(self, record: JobRecord) -> Path:
        p = self.job_dir(record.id)
        p.mkdir(parents=True, exist_ok=False)
        self.save(record)
        return p

    def save(self, record: JobRecord) -> None:
        """
        Ghi meta.json: ghi ra file tạm cùng thư mục rồi os.replace(),
        reader không bao giờ thấy bản ghi đang ghi dở.
        """
        p = self.job_dir(record.id)
        data = json.dumps(record.to_document(), ensure_ascii=False, indent=2)
        fd, tmp = tempfile.mkstemp(dir=p, prefix=".meta-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp, p / self.META_FILE)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def load(self, job_id: str) -> JobRecord:
        meta = self.job_dir(job_id) / self.META_FILE
        try:
            raw = meta.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise JobNotFound(job_id) from None
        try:
            return JobRecord.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"corrupt_meta:{job_id}") from e

    def list(self) -> List[JobRecord]:
        try:
            entries = [e for e in self.jobs_dir.iterdir() if e.is_dir()]
        except OSError as e:
            raise StorageError(f"cannot_read_jobs_dir:{e}") from e

        records = []
        for entry in entries:
            try:
                records.append(self.load(entry.name))
            except (JobNotFound, StorageError, OSError) as e:
                log.debug("skip_job_dir", path=str(entry), error=str(e))
        return records

    # ---------- staged input ----------

    def stage_input(self, job_id: str, data: bytes) -> Path:
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        p = self.staging_dir / f"input-{job_id}.tmp"
        p.write_bytes(data)
        return p

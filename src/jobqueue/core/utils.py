from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict


def new_job_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def job_urls(job_id: str, base_url: str = "") -> Dict[str, str]:
    prefix = base_url.rstrip("/")
    return {
        "status_url": f"{prefix}/jobs/{job_id}/status",
        "result_url": f"{prefix}/jobs/{job_id}/result",
        "log_url": f"{prefix}/jobs/{job_id}/log",
    }

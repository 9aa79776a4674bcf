from __future__ import annotations

import threading
from typing import Optional

import requests
import structlog

from ..core.models import JobRecord
from ..core.utils import job_urls

log = structlog.get_logger(__name__)


class WebhookNotifier:
    """
    Gửi một POST {id, status, result_url} khi job kết thúc. Best-effort:
    không retry, lỗi chỉ được log, không ảnh hưởng tới trạng thái job.
    """

    def __init__(self, base_url: str = "", timeout_s: float = 10.0):
        self.base_url = base_url
        self.timeout_s = timeout_s

    def payload(self, record: JobRecord) -> dict:
        return {
            "id": record.id,
            "status": record.status.value,
            "result_url": job_urls(record.id, self.base_url)["result_url"],
        }

    def notify(self, record: JobRecord) -> Optional[threading.Thread]:
        if not record.webhook:
            return None
        body = self.payload(record)
        log.debug("webhook_triggered", job_id=record.id, url=record.webhook, status=body["status"])
        t = threading.Thread(
            target=self._deliver,
            args=(record.webhook, body),
            name=f"webhook-{record.id}",
            daemon=True,
        )
        t.start()
        return t

    def _deliver(self, url: str, body: dict) -> None:
        try:
            resp = requests.post(url, json=body, timeout=self.timeout_s)
            log.debug("webhook_sent", job_id=body["id"], url=url, status_code=resp.status_code)
        except requests.RequestException as e:
            log.warning("webhook_failed", job_id=body["id"], url=url, error=str(e))

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional, Sequence

import yaml
from pydantic import TypeAdapter
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ---- storage ----
    jobs_dir: Path = Path("jobs")
    staging_dir: Optional[Path] = None  # None -> thư mục tạm của hệ thống

    # ---- http ----
    host: str = "0.0.0.0"
    port: int = 8080
    base_url: str = ""

    # ---- execution ----
    queue_capacity: int = 100
    max_concurrent_jobs: int = 0  # 0 = không giới hạn
    command_prefix: List[str] = []
    webhook_timeout_s: float = 10.0

    debug: bool = False

    config_file: Path = Path("conf/jobqueue.yaml")

    # không dùng prefix để JOBS_DIR / BASE_URL / DEBUG vẫn hoạt động
    model_config = SettingsConfigDict(env_prefix="", extra="ignore")


def _read_yaml(path: Path) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    return data


def load_settings(fixed_args: Optional[Sequence[str]] = None) -> Settings:
    # 0) env
    s = Settings()

    # 1) YAML (JOBQUEUE_CONF hoặc conf/jobqueue.yaml); env được ưu tiên hơn file
    data = _read_yaml(Path(os.environ.get("JOBQUEUE_CONF", str(s.config_file))))
    update = {}
    for key, value in data.items():
        info = Settings.model_fields.get(key)
        if info is None or key in s.model_fields_set:
            continue
        update[key] = TypeAdapter(info.annotation).validate_python(value)

    # 2) lệnh cố định từ CLI ghi đè mọi nguồn khác
    if fixed_args:
        update["command_prefix"] = list(fixed_args)

    return s.model_copy(update=update)

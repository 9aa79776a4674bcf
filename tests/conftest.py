import time

import pytest

from jobqueue.services.registry import RunningRegistry
from jobqueue.services.storage import MetadataStore
from jobqueue.settings import Settings


class RecordingNotifier:
    """Thay WebhookNotifier trong test: chỉ ghi lại các record được notify."""

    def __init__(self):
        self.calls = []

    def notify(self, record):
        self.calls.append(record.model_copy(deep=True))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jobs_dir=tmp_path / "jobs",
        staging_dir=tmp_path / "staging",
        config_file=tmp_path / "missing.yaml",
        base_url="",
        debug=False,
        command_prefix=[],
        max_concurrent_jobs=0,
        queue_capacity=100,
    )


@pytest.fixture
def store(tmp_path):
    return MetadataStore(tmp_path / "jobs", staging_dir=tmp_path / "staging")


@pytest.fixture
def registry():
    return RunningRegistry()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def wait_until():
    def _wait(predicate, timeout=10.0, interval=0.05):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            value = predicate()
            if value:
                return value
            time.sleep(interval)
        raise AssertionError("condition not reached before timeout")
    return _wait

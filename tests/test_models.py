import pytest
from pydantic import ValidationError

from jobqueue.core.models import CancellationToken, InvalidTransition, JobRecord, JobStatus
from jobqueue.core.utils import job_urls, new_job_id, utcnow


def _record(**kw):
    return JobRecord(id="job-1", args=["echo", "hi"], enqueued_at=utcnow(), **kw)


def test_new_record_is_in_queue_without_optional_fields():
    doc = _record().to_document()
    assert doc["status"] == "IN_QUEUE"
    for key in ("pid", "started_at", "completed_at", "mime_type", "webhook"):
        assert key not in doc


def test_transitions_follow_state_machine():
    r = _record()
    r.transition(JobStatus.IN_PROGRESS)
    r.transition(JobStatus.COMPLETED)
    assert r.status.terminal
    with pytest.raises(InvalidTransition):
        r.transition(JobStatus.FAILED)


def test_spawn_failure_may_skip_in_progress():
    r = _record()
    r.transition(JobStatus.FAILED)
    assert r.status is JobStatus.FAILED


@pytest.mark.parametrize("terminal", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED])
def test_terminal_states_accept_nothing(terminal):
    r = _record()
    r.transition(JobStatus.IN_PROGRESS)
    r.transition(terminal)
    for s in JobStatus:
        with pytest.raises(InvalidTransition):
            r.transition(s)


def test_in_queue_cannot_jump_to_completed():
    with pytest.raises(InvalidTransition):
        _record().transition(JobStatus.COMPLETED)


def test_write_once_fields_are_frozen():
    r = _record(webhook="http://example.invalid/hook")
    with pytest.raises(ValidationError):
        r.args = ["rm", "-rf", "/"]
    with pytest.raises(ValidationError):
        r.webhook = None
    r.pid = 42  # mutable


def test_unknown_status_is_rejected():
    doc = _record().to_document()
    doc["status"] = "DONE"
    with pytest.raises(ValidationError):
        JobRecord.model_validate(doc)


def test_cancellation_token_fires_once():
    calls = []
    token = CancellationToken(lambda: calls.append(1))
    assert not token.cancelled
    token.cancel()
    token.cancel()
    assert token.cancelled
    assert calls == [1]


def test_job_ids_are_unique():
    ids = {new_job_id() for _ in range(1000)}
    assert len(ids) == 1000


def test_job_urls_with_base_url():
    urls = job_urls("abc", "http://host:8080/")
    assert urls == {
        "status_url": "http://host:8080/jobs/abc/status",
        "result_url": "http://host:8080/jobs/abc/result",
        "log_url": "http://host:8080/jobs/abc/log",
    }
    assert job_urls("abc")["result_url"] == "/jobs/abc/result"

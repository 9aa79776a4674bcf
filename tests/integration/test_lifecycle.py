import threading

import pytest
from fastapi.testclient import TestClient

from jobqueue.api import create_app
from jobqueue.services import webhook as webhook_mod

TERMINAL = ("COMPLETED", "FAILED", "CANCELED")


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


def _wait_terminal(client, jid, wait_until):
    return wait_until(lambda: (lambda st: st if st["status"] in TERMINAL else None)(
        client.get(f"/jobs/{jid}/status").json()
    ), timeout=20)


def test_lifecycle(client, settings, wait_until):
    jid = client.post("/jobs", json={"args": ["sh", "-c", "echo ok; echo warn >&2"]}).json()["id"]
    st = _wait_terminal(client, jid, wait_until)
    assert st["status"] == "COMPLETED"
    assert st["enqueued_at"] <= st["started_at"] <= st["completed_at"]

    job_dir = settings.jobs_dir / jid
    assert sorted(p.name for p in job_dir.iterdir()) == ["meta.json", "stderr.txt", "stdout.txt"]
    assert client.get(f"/jobs/{jid}/result").content == b"ok\n"
    assert client.get(f"/jobs/{jid}/log").content == b"warn\n"


def test_concurrent_submissions_are_isolated(client, settings, wait_until):
    n = 12
    ids = [None] * n

    def submit(i):
        ids[i] = client.post("/jobs", json={"args": ["sh", "-c", f"sleep 0.2; echo job-{i}"]}).json()["id"]

    threads = [threading.Thread(target=submit, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(ids)) == n
    for i, jid in enumerate(ids):
        assert _wait_terminal(client, jid, wait_until)["status"] == "COMPLETED"
        assert client.get(f"/jobs/{jid}/result").content == f"job-{i}\n".encode()
    assert len([p for p in settings.jobs_dir.iterdir() if p.is_dir()]) == n


def test_cancel_beats_signal_exit_code(client, wait_until):
    jid = client.post("/jobs", json={"args": ["sh", "-c", "trap 'exit 7' TERM; echo up; sleep 30"]}).json()["id"]
    wait_until(lambda: client.get(f"/jobs/{jid}/status").json()["status"] == "IN_PROGRESS")
    client.put(f"/jobs/{jid}/cancel")
    assert _wait_terminal(client, jid, wait_until)["status"] == "CANCELED"


def test_webhook_posted_once_after_terminal_state(client, wait_until, monkeypatch):
    posts = []

    class Resp:
        status_code = 200

    def fake_post(url, json=None, timeout=None):
        # lúc webhook được gửi, trạng thái cuối đã được ghi xuống đĩa
        posts.append((url, json, client.get(f"/jobs/{json['id']}/status").json()["status"]))
        return Resp()

    monkeypatch.setattr(webhook_mod.requests, "post", fake_post)
    jid = client.post("/jobs", json={"args": ["false"], "webhook": "http://hooks.test/cb"}).json()["id"]
    _wait_terminal(client, jid, wait_until)
    wait_until(lambda: posts)
    threading.Event().wait(0.2)

    assert len(posts) == 1
    url, body, persisted = posts[0]
    assert url == "http://hooks.test/cb"
    assert body == {"id": jid, "status": "FAILED", "result_url": f"/jobs/{jid}/result"}
    assert persisted == "FAILED"


def test_unreachable_webhook_does_not_affect_job(client, wait_until):
    jid = client.post("/jobs", json={"args": ["true"], "webhook": "http://127.0.0.1:9/unreachable"}).json()["id"]
    assert _wait_terminal(client, jid, wait_until)["status"] == "COMPLETED"


def test_shutdown_cancels_running_jobs(settings, wait_until):
    with TestClient(create_app(settings)) as c:
        jid = c.post("/jobs", json={"args": ["sleep", "30"]}).json()["id"]
        wait_until(lambda: c.get(f"/jobs/{jid}/status").json()["status"] == "IN_PROGRESS")
    c2 = TestClient(create_app(settings))
    st = wait_until(lambda: (lambda s: s if s["status"] in TERMINAL else None)(c2.get(f"/jobs/{jid}/status").json()))
    assert st["status"] == "CANCELED"

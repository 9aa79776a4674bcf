from __future__ import annotations

import argparse
import asyncio
import functools
import json
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ValidationError

from .logging import setup_logging
from .services.job_service import AdmissionError, JobService
from .services.storage import JobNotFound, StorageError
from .settings import Settings, load_settings

log = structlog.get_logger(__name__)


# --------- Schemas ---------
class SubmitJobReq(BaseModel):
    args: List[str]
    mime_type: Optional[str] = None
    webhook: Optional[str] = None

class SubmitJobRes(BaseModel):
    id: str
    status_url: str
    result_url: str
    log_url: str

class JobSummary(BaseModel):
    id: str
    args: List[str]
    status: str
    result_url: str
    log_url: str
    enqueued_at: str

class OkRes(BaseModel):
    ok: bool = True


def parse_submission(body: bytes) -> Tuple[SubmitJobReq, bytes]:
    """
    Body = một JSON document, theo sau (tùy chọn) là dữ liệu thô dùng làm stdin.
    Bỏ đúng một dấu xuống dòng ngăn cách giữa hai phần.
    """
    text = body.decode("utf-8", errors="surrogateescape")
    start = len(text) - len(text.lstrip())
    doc, end = json.JSONDecoder().raw_decode(text, start)
    req = SubmitJobReq.model_validate(doc)

    rest = text[end:].encode("utf-8", errors="surrogateescape")
    if rest.startswith(b"\r\n"):
        rest = rest[2:]
    elif rest.startswith(b"\n"):
        rest = rest[1:]
    return req, rest


def create_app(settings: Optional[Settings] = None, service: Optional[JobService] = None) -> FastAPI:
    settings = settings or load_settings()
    svc = service or JobService(settings)
    # enqueue có thể block khi queue đầy: chạy trên pool riêng, không chiếm
    # threadpool chung của các endpoint sync
    admission = ThreadPoolExecutor(thread_name_prefix="admission")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc.start()
        yield
        svc.stop()
        admission.shutdown(wait=False)

    app = FastAPI(title="Job Queue API", lifespan=lifespan)
    app.state.service = svc

    if settings.debug:
        @app.middleware("http")
        async def log_requests(request: Request, call_next):
            t0 = time.perf_counter()
            response = await call_next(request)
            log.debug(
                "http_request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=round((time.perf_counter() - t0) * 1000.0, 2),
            )
            return response

    # --------- Endpoints ---------

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.post("/jobs", response_model=SubmitJobRes)
    async def submit_job(request: Request):
        body = await request.body()
        try:
            req, payload = parse_submission(body)
        except (ValueError, ValidationError):
            # json.JSONDecodeError là ValueError
            raise HTTPException(status_code=400, detail="Invalid JSON")
        try:
            res = await asyncio.get_running_loop().run_in_executor(
                admission,
                functools.partial(svc.submit, req.args, mime_type=req.mime_type, webhook=req.webhook, payload=payload),
            )
        except AdmissionError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StorageError:
            raise HTTPException(status_code=500, detail="Failed to store job")
        return SubmitJobRes(**res)

    @app.get("/jobs", response_model=List[JobSummary])
    def list_jobs():
        try:
            return svc.list_jobs()
        except StorageError:
            raise HTTPException(status_code=500, detail="Failed to read jobs directory")

    @app.get("/jobs/{job_id}/status")
    def job_status(job_id: str):
        try:
            record = svc.get_status(job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail="Job not found")
        except StorageError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return JSONResponse(record.to_document())

    @app.get("/jobs/{job_id}/result")
    def job_result(job_id: str):
        try:
            path, media_type = svc.result_file(job_id)
        except (JobNotFound, StorageError):
            raise HTTPException(status_code=404, detail="Result not available")
        return FileResponse(path, media_type=media_type)

    @app.get("/jobs/{job_id}/log")
    def job_log(job_id: str):
        try:
            path = svc.log_file(job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail="Log not available")
        return FileResponse(path, media_type="text/plain")

    @app.put("/jobs/{job_id}/cancel", response_model=OkRes)
    async def cancel_job(job_id: str):
        # O(1): tra registry + gửi signal, không chờ threadpool
        svc.cancel(job_id)
        return OkRes()

    return app


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="jobqueue", description="Run submitted commands as background jobs.")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("command", nargs=argparse.REMAINDER, help="fixed command prepended to every job's args")
    ns = parser.parse_args(argv)

    settings = load_settings(fixed_args=ns.command)
    logger = setup_logging(settings.debug)
    logger.info(
        "server_starting",
        host=ns.host or settings.host,
        port=ns.port or settings.port,
        fixed_command=list(settings.command_prefix) or None,
        jobs_dir=str(settings.jobs_dir),
    )
    uvicorn.run(
        create_app(settings),
        host=ns.host or settings.host,
        port=ns.port or settings.port,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, UploadFile, File, HTTPException, Request, Response
from loguru import logger

from common.config import JOB_TIMEOUT, LOG_LEVEL, MAX_CONCURRENCY, PREVIEW_DIR
from common.errors import QueueClosedError, UnreadablePayloadError
from common.extraction import WebhookExtractionClient
from common.job_schema import JobSnapshot, JobStatus, Payload
from common.log import setup_logger
from common.previews import PreviewStore
from worker.controller import UploadQueue


def build_queue() -> UploadQueue:
    """Queue wired to the webhook extractor and the configured preview directory."""
    return UploadQueue(
        extractor=WebhookExtractionClient(),
        previews=PreviewStore(PREVIEW_DIR),
        max_concurrency=MAX_CONCURRENCY,
        job_timeout=JOB_TIMEOUT,
    )


def create_app(queue: Optional[UploadQueue] = None) -> FastAPI:
    """
    Builds the HTTP app around `queue`. When no queue is given one is built
    from configuration on startup and shut down with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = queue is None
        if owned:
            setup_logger(LOG_LEVEL)
            app.state.queue = build_queue()
        yield
        if owned:
            app.state.queue.shutdown(wait=False)
            app.state.queue.extractor.close()
            app.state.queue.previews.close()

    app = FastAPI(title="Upload Processing Queue API", lifespan=lifespan)
    if queue is not None:
        app.state.queue = queue

    def get_queue(request: Request) -> UploadQueue:
        return request.app.state.queue

    def get_job_or_404(request: Request, job_id: str) -> JobSnapshot:
        job = get_queue(request).get_status(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    # ---------- API endpoints ----------

    @app.post("/jobs", status_code=201)
    async def create_job(request: Request, file: UploadFile = File(...)):
        content = await file.read()
        payload = Payload(
            data=content,
            media_type=file.content_type or "image/jpeg",
            filename=file.filename,
        )
        try:
            job_id = get_queue(request).submit(payload)
        except UnreadablePayloadError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except QueueClosedError as e:
            raise HTTPException(status_code=503, detail=str(e))

        job = get_queue(request).get_status(job_id)
        # the job may already have been removed by another client
        status = job.status if job else JobStatus.QUEUED
        return {"job_id": job_id, "status": status}

    @app.get("/jobs", response_model=List[JobSnapshot])
    def list_jobs(request: Request):
        return get_queue(request).list_jobs()

    @app.delete("/jobs")
    def clear_jobs(request: Request, status: JobStatus = JobStatus.COMPLETED):
        if status != JobStatus.COMPLETED:
            raise HTTPException(status_code=400, detail="Only COMPLETED jobs can be cleared in bulk")
        return {"removed": get_queue(request).clear_completed()}

    @app.get("/jobs/{job_id}", response_model=JobSnapshot)
    def read_job(request: Request, job_id: str):
        return get_job_or_404(request, job_id)

    @app.post("/jobs/{job_id}/retry", response_model=JobSnapshot)
    def retry_job(request: Request, job_id: str):
        job = get_job_or_404(request, job_id)
        if not get_queue(request).retry(job_id):
            raise HTTPException(status_code=409, detail=f"Job is {job.status.value}, only FAILED jobs can be retried")
        return get_job_or_404(request, job_id)

    @app.delete("/jobs/{job_id}", status_code=204)
    def delete_job(request: Request, job_id: str):
        get_queue(request).remove(job_id)
        return Response(status_code=204)

    @app.get("/jobs/{job_id}/preview")
    def get_preview(request: Request, job_id: str):
        path = get_queue(request).previews.path_for(job_id)
        try:
            # the job may be removed between lookup and read
            content = path.read_bytes() if path else None
        except FileNotFoundError:
            content = None
        if content is None:
            raise HTTPException(status_code=404, detail="Preview not available")
        return Response(content=content, media_type="image/png")

    @app.get("/stats")
    def read_stats(request: Request):
        return get_queue(request).stats()

    logger.debug("API routes registered")
    return app


app = create_app()

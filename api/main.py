import logging
from contextlib import asynccontextmanager
from typing import List

import uvicorn
from fastapi import Body, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import Response
from pydantic import ValidationError

from common import handles
from common.config import HOST, LOG_LEVEL, PORT
from common.files import EXTENSIONS
from common.job_schema import JobStatus, parse_settings
from common.storage import SourceFile
from worker.scheduler import BatchScheduler

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = BatchScheduler()
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("Scheduler started")
    try:
        yield
    finally:
        await scheduler.close()
        logger.info("Scheduler stopped")


app = FastAPI(title="Batch Image Tools API", lifespan=lifespan)


def _scheduler(request: Request) -> BatchScheduler:
    return request.app.state.scheduler


# ---------- Jobs ----------

@app.post("/jobs")
async def create_jobs(request: Request, files: List[UploadFile] = File(...)):
    sources = []
    for file in files:
        mime = file.content_type or ""
        if mime not in EXTENSIONS:
            raise HTTPException(status_code=415, detail=f"Unsupported image type: {mime or 'unknown'}")
        content = await file.read()
        sources.append(SourceFile(content=content, mime=mime, name=file.filename or ""))

    job_ids = _scheduler(request).intake(sources)
    return {"job_ids": job_ids, "status": JobStatus.PENDING.value}


@app.get("/jobs")
async def list_jobs(request: Request):
    return [job.summary() for job in _scheduler(request).jobs]


@app.delete("/jobs")
async def reset_jobs(request: Request):
    _scheduler(request).reset()
    return {"status": "cleared"}


@app.get("/jobs/{job_id}")
async def read_job(request: Request, job_id: str):
    job = _scheduler(request).get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.summary()


@app.get("/jobs/{job_id}/result")
async def get_result(request: Request, job_id: str):
    job = _scheduler(request).get_job(job_id)
    if not job or job.status != JobStatus.COMPLETED:
        raise HTTPException(status_code=404, detail="Result not available")
    result = job.result
    return Response(
        content=result.encoded_bytes,
        media_type=result.mime,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


@app.get("/results/{token}")
async def get_display(token: str):
    entry = handles.resolve(token)
    if entry is None:
        raise HTTPException(status_code=404, detail="Result released")
    data, mime = entry
    return Response(content=data, media_type=mime)


@app.get("/summary")
async def summary(request: Request):
    return _scheduler(request).summary()


# ---------- Settings ----------

@app.get("/settings")
async def read_settings(request: Request):
    return _scheduler(request).settings.model_dump()


@app.put("/settings")
async def update_settings(request: Request, payload: dict = Body(...)):
    try:
        settings = parse_settings(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False)) from e
    _scheduler(request).on_settings_changed(settings)
    return settings.model_dump()


def main():
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()

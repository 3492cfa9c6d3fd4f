# backend/converter/main.py
import logging
import os
from datetime import timezone
from functools import lru_cache
from typing import Optional
from urllib.parse import quote

from fastapi import FastAPI, UploadFile, File, Depends, Form, BackgroundTasks, Body, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .config import Settings, get_settings
from .errors import ConverterError, JobNotFound, NotReady, OutputMissing
from .logging_config import setup_logging
from .models import ConvertRequest, Job, JobStatus
from .store import JobStore
from .uploads import receive_upload
from .worker import ConversionDispatcher, purge_expired

logger = logging.getLogger(__name__)

settings = get_settings()
app = FastAPI(title=settings.PROJECT_NAME)

# --- CORS: open, the service carries no credentials of its own ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_store() -> JobStore:
    return JobStore()


def get_dispatcher(
    store: JobStore = Depends(get_store),
    current: Settings = Depends(get_settings),
) -> ConversionDispatcher:
    return ConversionDispatcher(store, current)


@app.on_event("startup")
def startup():
    current = get_settings()
    setup_logging(current.LOG_LEVEL, current.LOG_JSON)
    os.makedirs(current.upload_dir, exist_ok=True)
    os.makedirs(current.output_dir, exist_ok=True)


@app.exception_handler(ConverterError)
async def converter_error_handler(request: Request, exc: ConverterError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _isoformat(value):
    if value is None:
        return None
    # SQLite hands datetimes back without their offset; they are stored as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def content_disposition(filename: str) -> str:
    """Attachment header that always carries a quoted ``filename``.

    Non-ASCII names get an ASCII fallback plus an RFC 5987 ``filename*``.
    """
    fallback = filename.encode("ascii", "replace").decode("ascii")
    fallback = fallback.replace("\\", "\\\\").replace('"', '\\"')
    value = f'attachment; filename="{fallback}"'
    if not filename.isascii():
        value += f"; filename*=utf-8''{quote(filename)}"
    return value


def _find_conversion(store: JobStore, conversion_id: str) -> Job:
    job = store.get_by_conversion_id(conversion_id)
    if job is None:
        raise JobNotFound("Conversion job not found")
    return job


@app.post("/upload", status_code=201)
async def upload_file(
    file: Optional[UploadFile] = File(default=None),
    userId: Optional[str] = Form(default=None),
    store: JobStore = Depends(get_store),
    current: Settings = Depends(get_settings),
):
    if current.JOB_RETENTION_SECONDS:
        purge_expired(store, current.JOB_RETENTION_SECONDS)

    job = await receive_upload(store, file, current, user_id=userId)
    return {
        "fileId": job.id,
        "message": "File uploaded successfully",
        "originalName": job.original_name,
        "size": job.size_bytes,
    }


@app.post("/convert/{file_id}")
def start_conversion(
    file_id: str,
    background_tasks: BackgroundTasks,
    body: Optional[ConvertRequest] = Body(default=None),
    dispatcher: ConversionDispatcher = Depends(get_dispatcher),
):
    job = dispatcher.start(file_id, body or ConvertRequest())

    # runs after the response is sent, on the event loop
    background_tasks.add_task(dispatcher.run, file_id)

    return {
        "conversionId": job.conversion_id,
        "message": "Audio trimming started" if job.trim else "Conversion started",
        "format": job.format,
        "quality": job.quality,
        "trim": job.trim,
        "startTime": job.trim_start,
        "endTime": job.trim_end,
    }


@app.get("/status/{conversion_id}")
def get_status(conversion_id: str, store: JobStore = Depends(get_store)):
    job = _find_conversion(store, conversion_id)
    return {
        "conversionId": conversion_id,
        "status": job.status.value,
        # records without progress tracking report as done
        "progress": job.progress if job.progress is not None else 100,
        "originalName": job.original_name,
        "outputFilename": job.output_filename,
        "format": job.format,
        "startedAt": _isoformat(job.started_at),
        "completedAt": _isoformat(job.completed_at),
        "error": job.error,
    }


@app.get("/download/{conversion_id}")
def download(conversion_id: str, store: JobStore = Depends(get_store)):
    job = _find_conversion(store, conversion_id)
    if job.status != JobStatus.COMPLETED:
        raise NotReady("Conversion not completed")
    if not job.output_path or not os.path.exists(job.output_path):
        logger.error("Output for conversion %s missing at %s", conversion_id, job.output_path)
        raise OutputMissing("Converted file not found")

    return FileResponse(
        path=job.output_path,
        media_type="application/octet-stream",
        headers={"Content-Disposition": content_disposition(job.output_filename)},
    )


@app.get("/health")
def health():
    return {"status": "healthy", "service": "converter"}


def run():
    import uvicorn

    current = get_settings()
    setup_logging(current.LOG_LEVEL, current.LOG_JSON)
    logger.info("Converter service running on port %d", current.PORT)
    uvicorn.run(app, host=current.HOST, port=current.PORT)

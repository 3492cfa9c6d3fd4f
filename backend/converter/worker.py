# backend/converter/worker.py
"""Conversion dispatch and the job state machine.

``ConversionDispatcher.start`` moves a job from ``uploaded`` to
``processing`` and returns at once; ``ConversionDispatcher.run`` is then
scheduled as a background task and folds the engine's event stream into the
job record until it reaches ``completed`` or ``failed``.
"""

import asyncio
import logging
import os
from datetime import timedelta
from typing import Callable, List, Optional
from uuid import uuid4

from .config import Settings
from .errors import ConversionConflict, InvalidConversionRequest, JobNotFound
from .ffmpeg_utils import (
    SUPPORTED_FORMATS,
    EngineCompleted,
    EngineFailed,
    EngineProgress,
    EngineStarted,
    TranscodeJob,
    TranscodeParams,
    normalize_bitrate,
)
from .models import ConvertRequest, Job, JobStatus, QualityTier, utcnow
from .store import JobStore

logger = logging.getLogger(__name__)

# progress shown before ffmpeg reports anything
BOOTSTRAP_PROGRESS = 20
# engine percentages are rescaled into this band; 100 is reserved for completion
ENGINE_PROGRESS_START = 50
ENGINE_PROGRESS_END = 95


def scale_engine_progress(percent: float) -> int:
    percent = min(max(percent, 0.0), 100.0)
    span = ENGINE_PROGRESS_END - ENGINE_PROGRESS_START
    return min(round(ENGINE_PROGRESS_START + percent * span / 100.0), ENGINE_PROGRESS_END)


def output_filename_for(original_name: str, fmt: str, trim: bool) -> str:
    stem = os.path.splitext(os.path.basename(original_name))[0]
    suffix = "_trimmed" if trim else ""
    return f"{stem}{suffix}.{fmt}"


def validate_request(request: ConvertRequest) -> ConvertRequest:
    """Return a normalized copy of ``request`` or raise InvalidConversionRequest."""
    fmt = (request.format or "mp3").lower()
    if fmt not in SUPPORTED_FORMATS:
        raise InvalidConversionRequest(
            f"Unsupported format '{request.format}'. Supported: {', '.join(SUPPORTED_FORMATS)}"
        )
    quality = (request.quality or QualityTier.HIGH.value).lower()
    if quality not in {tier.value for tier in QualityTier}:
        raise InvalidConversionRequest(f"Unsupported quality '{request.quality}'")
    try:
        bitrate = normalize_bitrate(request.bitrate)
    except ValueError as exc:
        raise InvalidConversionRequest(str(exc)) from exc

    start = end = None
    if request.trim:
        start, end = request.start_time, request.end_time
        if start is not None and start < 0:
            raise InvalidConversionRequest("startTime must not be negative")
        if end is not None and end < 0:
            raise InvalidConversionRequest("endTime must not be negative")
        if start is not None and end is not None and end <= start:
            raise InvalidConversionRequest("endTime must be greater than startTime")

    return ConvertRequest(
        format=fmt, quality=quality, bitrate=bitrate,
        start_time=start, end_time=end, trim=request.trim,
    )


class ConversionDispatcher:
    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        engine_factory: Optional[Callable[[TranscodeParams], TranscodeJob]] = None,
    ):
        self.store = store
        self.settings = settings
        self.engine_factory = engine_factory or self._ffmpeg_engine

    def _ffmpeg_engine(self, params: TranscodeParams) -> TranscodeJob:
        return TranscodeJob(params, self.settings.FFMPEG_PATH, self.settings.FFPROBE_PATH)

    def start(self, upload_id: str, request: ConvertRequest) -> Job:
        """Begin a conversion attempt. The caller schedules ``run`` afterwards.

        Only a job still in ``uploaded`` can be converted; the check and the
        transition to ``processing`` happen in a single store update.
        """
        if self.store.get(upload_id) is None:
            raise JobNotFound("File not found")
        request = validate_request(request)

        conversion_id = str(uuid4())
        output_dir = self.settings.output_dir
        os.makedirs(output_dir, exist_ok=True)

        def begin(job: Job) -> None:
            if job.status != JobStatus.UPLOADED:
                raise ConversionConflict(
                    f"File {upload_id} is already {job.status.value} (conversion {job.conversion_id})"
                )
            filename = output_filename_for(job.original_name, request.format, request.trim)
            job.status = JobStatus.PROCESSING
            job.conversion_id = conversion_id
            job.format = request.format
            job.quality = request.quality
            job.bitrate = request.bitrate
            job.trim = request.trim
            job.trim_start = request.start_time
            job.trim_end = request.end_time
            job.output_filename = filename
            job.output_path = os.path.join(output_dir, f"{conversion_id}-{filename}")
            job.started_at = utcnow()
            job.progress = BOOTSTRAP_PROGRESS

        job = self.store.update(upload_id, begin)
        if job.trim:
            logger.info(
                "Conversion %s: trimming %s (%ss to %ss) to %s",
                conversion_id, job.original_name, job.trim_start, job.trim_end, job.format,
            )
        else:
            logger.info("Conversion %s: converting %s to %s", conversion_id, job.original_name, job.format)
        return job

    async def run(self, upload_id: str) -> None:
        """Drive one conversion to a terminal state. Never raises."""
        job = self.store.get(upload_id)
        if job is None or job.status != JobStatus.PROCESSING:
            logger.warning("Job %s is not processing; nothing to run", upload_id)
            return

        params = TranscodeParams(
            input_path=job.stored_path,
            output_path=job.output_path,
            format=job.format,
            quality=job.quality,
            bitrate=job.bitrate,
            start=job.trim_start,
            end=job.trim_end,
        )
        timeout = self.settings.TRANSCODE_TIMEOUT_SECONDS or None

        try:
            finished = await asyncio.wait_for(self._consume(upload_id, self.engine_factory(params)), timeout)
            if not finished:
                self._fail(upload_id, "Transcoding engine stopped without reporting a result")
        except asyncio.TimeoutError:
            logger.error("Conversion %s timed out after %ss", job.conversion_id, timeout)
            self._fail(upload_id, f"Conversion timed out after {timeout:g} seconds")
        except Exception as exc:
            logger.exception("Conversion %s crashed", job.conversion_id)
            self._fail(upload_id, str(exc) or exc.__class__.__name__)

    async def _consume(self, upload_id: str, engine: TranscodeJob) -> bool:
        events = engine.events()
        try:
            async for event in events:
                if isinstance(event, EngineStarted):
                    logger.info("ffmpeg started for job %s: %s", upload_id, event.command)
                    self._started(upload_id, event.command)
                elif isinstance(event, EngineProgress):
                    logger.debug("Job %s: engine at %.1f%%", upload_id, event.percent)
                    self._advance(upload_id, scale_engine_progress(event.percent))
                elif isinstance(event, EngineCompleted):
                    self._complete(upload_id)
                    return True
                elif isinstance(event, EngineFailed):
                    logger.error("ffmpeg failed for job %s: %s", upload_id, event.message)
                    self._fail(upload_id, event.message)
                    return True
        finally:
            await events.aclose()
        return False

    def _started(self, upload_id: str, command: str) -> None:
        def mutate(job: Job) -> None:
            if job.status != JobStatus.PROCESSING:
                return
            job.command = command
            job.progress = max(job.progress or 0, ENGINE_PROGRESS_START)

        self.store.update(upload_id, mutate)

    def _advance(self, upload_id: str, value: int) -> None:
        def mutate(job: Job) -> None:
            # out-of-order or stale events must not move progress backwards
            if job.status == JobStatus.PROCESSING and value >= (job.progress or 0):
                job.progress = value

        self.store.update(upload_id, mutate)

    def _complete(self, upload_id: str) -> None:
        def mutate(job: Job) -> None:
            if job.status != JobStatus.PROCESSING:
                return
            if not os.path.exists(job.output_path):
                job.status = JobStatus.FAILED
                job.error = "Transcoding finished but produced no output file"
            else:
                job.status = JobStatus.COMPLETED
                job.progress = 100
            job.completed_at = utcnow()

        job = self.store.update(upload_id, mutate)
        if job.status == JobStatus.COMPLETED:
            logger.info("Conversion %s completed: %s", job.conversion_id, job.output_path)
        else:
            logger.error("Conversion %s failed: %s", job.conversion_id, job.error)

    def _fail(self, upload_id: str, message: str) -> None:
        def mutate(job: Job) -> None:
            if job.status != JobStatus.PROCESSING:
                return
            job.status = JobStatus.FAILED
            job.error = message
            job.completed_at = utcnow()

        self.store.update(upload_id, mutate)


def purge_expired(store: JobStore, retention_seconds: int) -> List[Job]:
    """Drop finished jobs older than the retention window, with their files."""
    cutoff = utcnow() - timedelta(seconds=retention_seconds)
    removed = store.purge_finished(cutoff)
    for job in removed:
        for path in (job.stored_path, job.output_path):
            if path and os.path.exists(path):
                try:
                    os.remove(path)
                except OSError:
                    logger.warning("Could not remove %s", path, exc_info=True)
    return removed

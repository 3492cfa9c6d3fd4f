# backend/converter/uploads.py
import logging
import os
import re
from typing import Optional
from uuid import uuid4

import aiofiles
from fastapi import UploadFile

from .config import Settings
from .errors import MissingFile, PayloadTooLarge, StorageError, UnsupportedMediaType
from .models import Job, JobStatus
from .store import JobStore

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
ALLOWED_MIME = re.compile(r"audio|video")
ALLOWED_EXTENSIONS = {
    ".mp3", ".wav", ".flac", ".m4a", ".ogg", ".wma",
    ".mp4", ".avi", ".mov", ".mkv", ".webm",
}


def is_allowed_media(filename: str, mime_type: Optional[str]) -> bool:
    """Either an audio/video MIME type or a known extension is enough."""
    if mime_type and ALLOWED_MIME.search(mime_type):
        return True
    return os.path.splitext(filename)[1].lower() in ALLOWED_EXTENSIONS


# Save uploaded file in chunks (async), stopping once max_bytes is exceeded
async def save_upload_file(upload_file: UploadFile, destination: str, max_bytes: int) -> int:
    written = 0
    try:
        async with aiofiles.open(destination, "wb") as out_file:
            while True:
                chunk = await upload_file.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise PayloadTooLarge(f"File exceeds the {max_bytes} byte upload limit")
                await out_file.write(chunk)
    except Exception:
        if os.path.exists(destination):
            os.remove(destination)
        raise
    finally:
        await upload_file.close()
    return written


async def receive_upload(
    store: JobStore,
    upload_file: Optional[UploadFile],
    settings: Settings,
    user_id: Optional[str] = None,
) -> Job:
    if upload_file is None or not upload_file.filename:
        raise MissingFile("No file provided")

    original_name = os.path.basename(upload_file.filename)
    mime_type = upload_file.content_type
    logger.info("File upload attempt: %s, MIME: %s", original_name, mime_type)
    if not is_allowed_media(original_name, mime_type):
        logger.warning("Rejected file: %s (MIME: %s)", original_name, mime_type)
        raise UnsupportedMediaType("Only audio and video files are allowed!")

    upload_dir = settings.upload_dir
    upload_id = str(uuid4())
    stored_path = os.path.join(upload_dir, f"{uuid4()}-{original_name}")
    try:
        os.makedirs(upload_dir, exist_ok=True)
        size = await save_upload_file(upload_file, stored_path, settings.MAX_UPLOAD_BYTES)
    except PayloadTooLarge:
        logger.warning("Rejected file: %s (over %d bytes)", original_name, settings.MAX_UPLOAD_BYTES)
        raise
    except OSError as exc:
        logger.exception("Could not store upload %s", original_name)
        raise StorageError("Upload failed") from exc

    try:
        job = store.create(Job(
            id=upload_id,
            original_name=original_name,
            stored_path=stored_path,
            size_bytes=size,
            mime_type=mime_type,
            user_id=user_id or "anonymous",
            status=JobStatus.UPLOADED,
        ))
    except Exception:
        os.remove(stored_path)
        raise
    logger.info("Stored upload %s as %s (%d bytes)", upload_id, stored_path, size)
    return job

# backend/converter/models.py
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class QualityTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Job(SQLModel, table=True):
    # set at upload time, never changed afterwards
    id: str = Field(primary_key=True, nullable=False)
    original_name: str = Field(nullable=False)
    stored_path: str = Field(nullable=False)
    size_bytes: int = Field(default=0, nullable=False)
    mime_type: Optional[str] = Field(default=None)
    user_id: str = Field(default="anonymous", nullable=False)
    uploaded_at: datetime = Field(default_factory=utcnow)

    status: JobStatus = Field(default=JobStatus.UPLOADED, nullable=False)  # uploaded | processing | completed | failed

    # assigned once, when a conversion starts
    conversion_id: Optional[str] = Field(default=None, index=True, unique=True)
    format: Optional[str] = Field(default=None)
    quality: Optional[str] = Field(default=None)
    bitrate: Optional[str] = Field(default=None)
    trim: bool = Field(default=False, nullable=False)
    trim_start: Optional[float] = Field(default=None)
    trim_end: Optional[float] = Field(default=None)
    output_path: Optional[str] = Field(default=None)
    output_filename: Optional[str] = Field(default=None)
    command: Optional[str] = Field(default=None)

    progress: Optional[int] = Field(default=None)  # 0 - 100
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    error: Optional[str] = Field(default=None)


class ConvertRequest(BaseModel):
    """Body of ``POST /convert/{fileId}``; every field is optional."""

    model_config = ConfigDict(populate_by_name=True)

    format: str = "mp3"
    quality: str = QualityTier.HIGH.value
    bitrate: Optional[Union[int, str]] = None
    start_time: Optional[float] = PydanticField(default=None, alias="startTime")
    end_time: Optional[float] = PydanticField(default=None, alias="endTime")
    trim: bool = False

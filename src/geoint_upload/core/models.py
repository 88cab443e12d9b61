"""
Pydantic models for GeoINT Upload.

These models describe the files handed to the engine, the sessions and parts
it tracks, the persisted resume record, and the payloads exchanged with the
Upload and Entity APIs.
"""

import mimetypes
from datetime import datetime, timezone
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ServiceId(IntEnum):
    """Destination category of an uploaded image."""

    OPTICAL = 1
    SAR = 2
    WEEKLY = 3

    @classmethod
    def parse(cls, value: Union[str, int, "ServiceId"]) -> "ServiceId":
        """Accept a member, its number, or its case-insensitive name."""
        if isinstance(value, ServiceId):
            return value
        if isinstance(value, int) or str(value).strip().isdigit():
            return cls(int(value))
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            names = ", ".join(m.name.lower() for m in cls)
            raise ValueError(f"Unknown service '{value}'. Must be one of: {names}")


class ImageStatus(IntEnum):
    """Status codes of the logical image entity."""

    DRAFT = 1
    UPLOAD_PENDING = 2
    UPLOAD_COMPLETE = 3
    IN_PROGRESS = 4
    COMPLETED = 5
    ABORTED = 6
    FAILED = 7


class FileStatus(str, Enum):
    """Local status of a file as shown to the user."""

    IDLE = "idle"
    UPLOADING = "uploading"
    SUCCESS = "success"
    FAILED = "failed"


class UploadOutcome(str, Enum):
    """Terminal result of one file in a batch."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INVALID = "invalid"
    SKIPPED = "skipped"


# Byte sources
class ByteSource:
    """Random-access source of a file's bytes."""

    def read_range(self, start: int, end: int) -> bytes:
        raise NotImplementedError


class LocalFileSource(ByteSource):
    """Reads byte ranges from a file on disk."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def read_range(self, start: int, end: int) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(start)
            return f.read(end - start)

    def __repr__(self) -> str:
        return f"LocalFileSource({str(self.path)!r})"


class BytesSource(ByteSource):
    """Serves byte ranges from an in-memory buffer."""

    def __init__(self, data: bytes) -> None:
        self.data = data

    def read_range(self, start: int, end: int) -> bytes:
        return self.data[start:end]

    def __repr__(self) -> str:
        return f"BytesSource(<{len(self.data)} bytes>)"


class FileDescriptor(BaseModel):
    """A file submitted to the engine. Read-only once created."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1, description="File name")
    size: int = Field(..., ge=0, description="File size in bytes")
    last_modified: int = Field(
        ..., ge=0, description="Last modification time in epoch milliseconds"
    )
    source: ByteSource = Field(..., description="Sliceable byte source", repr=False)
    content_type: str = Field("application/octet-stream", description="MIME type")
    title: Optional[str] = Field(None, description="Target name of the image")
    tags: List[str] = Field(default_factory=list, description="Free-form tags")
    metadata: Optional[str] = Field(None, description="JSON or XML metadata blob")
    imaging_date: Optional[datetime] = Field(None, description="Acquisition date")

    @field_validator("tags", mode="before")
    @classmethod
    def split_tags(cls, v: Any) -> List[str]:
        """Accept a comma-separated string as well as a list."""
        if v is None:
            return []
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return [str(t).strip() for t in v if str(t).strip()]

    @classmethod
    def from_path(cls, path: Union[str, Path], **kwargs: Any) -> "FileDescriptor":
        """Describe a local file, taking identity from the filesystem."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Local file not found: {path}")
        if path.is_dir():
            raise ValueError(f"Path is a directory, not a file: {path}")

        stat = path.stat()
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        kwargs.setdefault("content_type", content_type)
        return cls(
            name=path.name,
            size=stat.st_size,
            last_modified=int(stat.st_mtime * 1000),
            source=LocalFileSource(path),
            **kwargs,
        )

    @property
    def display_name(self) -> str:
        return self.title or self.name

    def imaging_date_iso(self) -> str:
        """Imaging date in UTC ISO format, falling back to last-modified."""
        if self.imaging_date is not None:
            dt = self.imaging_date
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
        else:
            dt = datetime.fromtimestamp(self.last_modified / 1000, tz=timezone.utc)
        return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def read_range(self, start: int, end: int) -> bytes:
        return self.source.read_range(start, end)


# Session and parts
class PartRecord(BaseModel):
    """A committed part of a multipart upload."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    part_number: int = Field(..., ge=1, alias="PartNumber")
    etag: str = Field(..., alias="ETag")


class UploadSession(BaseModel):
    """Server-side grouping of all parts of one multipart transfer attempt."""

    session_id: str = Field(..., description="Upload id issued by the Upload API")
    item_id: str = Field(..., description="Server-assigned logical grouping id")
    entity_id: str = Field(..., description="Logical image record id")
    chunk_size: int = Field(..., gt=0)
    total_parts: int = Field(..., ge=1)


class ResumeState(BaseModel):
    """Persisted projection of an UploadSession and its committed parts."""

    model_config = ConfigDict(populate_by_name=True)

    upload_id: str = Field(..., alias="uploadId")
    item_id: str = Field(..., alias="itemId")
    image_id: str = Field(..., alias="imageId")
    service_id: str = Field(..., alias="serviceId")
    chunk_size: int = Field(..., gt=0, alias="chunkSize")
    completed_parts: List[PartRecord] = Field(
        default_factory=list, alias="completedParts"
    )

    @field_validator("service_id", mode="before")
    @classmethod
    def coerce_service_id(cls, v: Any) -> str:
        return str(int(v)) if isinstance(v, int) else v

    def matches(self, chunk_size: int, service_id: Union[str, int]) -> bool:
        """True when this state can resume an attempt with these settings."""
        return self.chunk_size == chunk_size and self.service_id == str(
            int(service_id)
        )

    def merged_with(self, parts: List[PartRecord]) -> "ResumeState":
        """Copy of this state with ``parts`` added, de-duplicated by number."""
        by_number: Dict[int, PartRecord] = {
            p.part_number: p for p in self.completed_parts
        }
        for part in parts:
            by_number.setdefault(part.part_number, part)
        return self.model_copy(update={"completed_parts": list(by_number.values())})

    def to_session(self, total_parts: int) -> UploadSession:
        return UploadSession(
            session_id=self.upload_id,
            item_id=self.item_id,
            entity_id=self.image_id,
            chunk_size=self.chunk_size,
            total_parts=total_parts,
        )


# Upload API payloads
class StartUploadRequest(BaseModel):
    """Request body for starting a single-put or multipart upload."""

    file_name: str
    file_size: int = Field(..., ge=0)
    file_type: str
    imaging_date: str
    metadata: str = ""
    image_type: int
    name: str
    org_id: str
    tags: List[str] = Field(default_factory=list)
    user_id: str


class StartMultipartRequest(StartUploadRequest):
    """Request body for starting a multipart upload."""

    chunk_size: int = Field(..., gt=0)


class SingleUploadTarget(BaseModel):
    """Upload descriptor for the single-put path."""

    upload_id: str
    url: str
    item_id: str


class MultipartStart(BaseModel):
    """Identifiers of a freshly started multipart session."""

    upload_id: str
    item_id: str


class CompleteMultipartRequest(BaseModel):
    """Request body for finalizing a multipart upload."""

    file_name: str
    upload_id: str
    parts: List[PartRecord]

    @field_validator("parts")
    @classmethod
    def parts_strictly_increasing(cls, v: List[PartRecord]) -> List[PartRecord]:
        numbers = [p.part_number for p in v]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError("Parts must be sorted, gap-free and start at 1")
        return v


# Entity API payloads
class CreateEntityRequest(BaseModel):
    """Request body for creating the logical image entity."""

    model_config = ConfigDict(populate_by_name=True)

    service_id: str = Field(..., alias="serviceId")
    name: str
    photo_date: Optional[str] = Field(None, alias="photoDate")
    metadata: str = ""
    chunk_size: Optional[int] = Field(None, alias="chunkSize")
    chunk_amount: Optional[int] = Field(None, alias="chunkAmount")
    file_name: str = Field(..., alias="fileName")
    file_size: int = Field(..., alias="fileSize")
    file_type: str = Field(..., alias="fileType")
    user_id: str = Field(..., alias="userId")
    organization_id: str = Field(..., alias="organizationId")
    item_id: str = Field(..., alias="itemId")
    upload_id: str = Field(..., alias="uploadId")
    hashtags: List[str] = Field(default_factory=list)


# Engine output
class ProgressEvent(BaseModel):
    """Progress snapshot delivered to listeners."""

    file_index: int
    file_name: str
    file_percent: int = Field(..., ge=0, le=100)
    batch_percent: int = Field(..., ge=0, le=100)


class Alert(BaseModel):
    """User-facing notification."""

    level: str = Field("error", description="error, warning or info")
    title: str
    message: Optional[str] = None
    file_name: Optional[str] = None


class UploadResult(BaseModel):
    """Terminal result of one file."""

    file_name: str
    outcome: UploadOutcome
    entity_id: Optional[str] = None
    upload_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == UploadOutcome.COMPLETED


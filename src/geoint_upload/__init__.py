"""
GeoINT Upload - Resumable, concurrent, chunked uploads of large imagery files.

This package provides:
- Upload engine that splits large files into parts and transfers them in parallel
- Resume state that survives crashes and restarts
- REST and S3 backends
- CLI tool with live progress and Ctrl-C cancellation
"""

__version__ = "1.0.0"

from .core.api import GeointUploadAPI, upload_file
from .core.cancellation import CancellationCoordinator, TransferState
from .core.client import EntityApiClient, UploadApiClient
from .core.config import S3Config, UploaderConfig
from .core.events import LoggingListener, UploadListener
from .core.exceptions import (
    ApiError,
    ConfigurationError,
    FatalUploadError,
    GeointUploadError,
    NetworkError,
    TransientPartError,
    UploadError,
    UserCancelledError,
    ValidationError,
)
from .core.models import (
    FileDescriptor,
    ImageStatus,
    ProgressEvent,
    ServiceId,
    UploadOutcome,
    UploadResult,
)
from .core.orchestrator import UploadOrchestrator
from .core.resume_store import ResumeStateStore
from .core.s3_client import S3UploadBackend

__all__ = [
    # Core classes
    "GeointUploadAPI",
    "UploadOrchestrator",
    "CancellationCoordinator",
    "ResumeStateStore",
    "UploadApiClient",
    "EntityApiClient",
    "S3UploadBackend",
    # Configuration
    "UploaderConfig",
    "S3Config",
    # Models
    "FileDescriptor",
    "ImageStatus",
    "ProgressEvent",
    "ServiceId",
    "TransferState",
    "UploadOutcome",
    "UploadResult",
    # Listeners
    "UploadListener",
    "LoggingListener",
    # Exceptions
    "GeointUploadError",
    "ConfigurationError",
    "ValidationError",
    "NetworkError",
    "ApiError",
    "UploadError",
    "TransientPartError",
    "FatalUploadError",
    "UserCancelledError",
    # Convenience functions
    "upload_file",
    # Metadata
    "__version__",
]

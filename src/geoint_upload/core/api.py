"""Programmatic API for GeoINT uploads."""

import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple, Union

from .client import EntityApiClient, UploadApiClient
from .config import S3Config, UploaderConfig
from .events import UploadListener
from .exceptions import ConfigurationError, FatalUploadError
from .models import FileDescriptor, ResumeState, UploadResult
from .orchestrator import UploadOrchestrator
from .resume_store import ResumeStateStore
from .s3_client import S3UploadBackend
from .transport import PartTransport

logger = logging.getLogger(__name__)

BACKENDS = ("http", "s3")


class GeointUploadAPI:
    """High-level API for resumable GeoINT uploads."""

    def __init__(
        self,
        config: Optional[UploaderConfig] = None,
        listener: Optional[UploadListener] = None,
        backend: str = "http",
        s3_config: Optional[S3Config] = None,
        upload_api: Any = None,
        entity_api: Any = None,
    ):
        """Initialize the upload API.

        Args:
            config: Uploader settings (default: from GEOINT_* env vars)
            listener: Receives progress, status and alert events
            backend: "http" for the REST gateway or "s3" for a bucket
            s3_config: S3 settings for the "s3" backend (default: from env)
            upload_api: Explicit Upload API implementation, overrides backend
            entity_api: Explicit Entity API implementation, overrides backend
        """
        if backend not in BACKENDS:
            raise ConfigurationError(
                f"Invalid backend '{backend}'. Must be one of: {', '.join(BACKENDS)}"
            )
        self.config = config or UploaderConfig.from_env()
        self.backend = backend
        self.s3_backend: Optional[S3UploadBackend] = None

        if upload_api is None or entity_api is None:
            if backend == "s3":
                self.s3_backend = S3UploadBackend(s3_config or S3Config.from_env())
                upload_api = upload_api or self.s3_backend
                entity_api = entity_api or self.s3_backend
            else:
                self.config.require_api_urls()
                upload_api = upload_api or UploadApiClient(
                    self.config.upload_api_url,
                    self.config.api_key,
                    self.config.timeout,
                )
                entity_api = entity_api or EntityApiClient(
                    self.config.api_url, self.config.api_key, self.config.timeout
                )

        self.store = ResumeStateStore(self.config.state_dir)
        self.orchestrator = UploadOrchestrator(
            upload_api=upload_api,
            entity_api=entity_api,
            config=self.config,
            store=self.store,
            transport=PartTransport(connect_timeout=self.config.timeout),
            listener=listener,
        )

    # Uploads
    def upload(self, files: Sequence[FileDescriptor]) -> List[UploadResult]:
        """Upload files sequentially. Returns one result per file."""
        return self.orchestrator.upload(files)

    def upload_paths(
        self, paths: Sequence[Union[str, Path]], **descriptor_kwargs
    ) -> List[UploadResult]:
        """Upload local files, sharing ``descriptor_kwargs`` (tags, metadata...)."""
        files = [FileDescriptor.from_path(p, **descriptor_kwargs) for p in paths]
        return self.upload(files)

    def cancel(self) -> bool:
        """Cancel the active transfer. Returns False when nothing is running."""
        return self.orchestrator.cancel()

    # Resume state
    def pending_resumes(self) -> List[Tuple[str, ResumeState]]:
        """Interrupted multipart uploads that can still be resumed."""
        return self.store.items()

    def clear_resume_states(self) -> int:
        """Forget every interrupted upload. Returns how many were cleared."""
        return self.store.delete_all()

    def cleanup_abandoned_uploads(self, max_age_hours: int = 24) -> int:
        """Abort bucket-side multipart sessions no resume state refers to."""
        if self.s3_backend is None:
            raise ConfigurationError("Cleanup requires the s3 backend")
        keep = [state.upload_id for _, state in self.pending_resumes()]
        return self.s3_backend.cleanup_abandoned_uploads(max_age_hours, keep)


# Convenience functions
def upload_file(
    local_path: Union[str, Path],
    config: Optional[UploaderConfig] = None,
    listener: Optional[UploadListener] = None,
    **descriptor_kwargs,
) -> UploadResult:
    """Upload one file with settings from the environment.

    Raises:
        FatalUploadError: if the upload did not complete
    """
    api = GeointUploadAPI(config=config, listener=listener)
    result = api.upload_paths([local_path], **descriptor_kwargs)[0]
    if not result.ok:
        raise FatalUploadError(
            result.error or f"Upload {result.outcome.value}", result.file_name
        )
    return result

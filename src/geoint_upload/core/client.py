"""REST clients for the Upload API and the Entity API."""

import logging
from typing import Any, Dict, Optional

import requests

from .exceptions import ApiError, NetworkError
from .models import (
    CompleteMultipartRequest,
    CreateEntityRequest,
    ImageStatus,
    MultipartStart,
    SingleUploadTarget,
    StartMultipartRequest,
    StartUploadRequest,
)

logger = logging.getLogger(__name__)


class _RestClient:
    """Shared session handling of the GeoINT REST services."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: int = 30):
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if api_key:
            self.session.headers["x-api-key"] = api_key

    def _make_request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Make a request and return the decoded JSON body (None when empty)."""
        url = f"{self.base_url}{endpoint}"
        kwargs.setdefault("timeout", self.timeout)

        try:
            response = self.session.request(method, url, **kwargs)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"API request {method} {endpoint} failed: {e}")
            response = getattr(e, "response", None)
            if response is None:
                raise NetworkError(f"Request to {endpoint} failed: {e}") from e
            try:
                error_data = response.json()
            except ValueError:
                logger.error(f"Response content: {response.text[:500]}")
                raise NetworkError(
                    f"Request to {endpoint} failed: {e}", response.status_code
                ) from e
            logger.error(f"Error details: {error_data}")
            raise ApiError(
                f"Request to {endpoint} failed: {e}", response.status_code, error_data
            ) from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text


def _unwrap(body: Any) -> Dict[str, Any]:
    """Some endpoints nest their payload under ``data``."""
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    if not isinstance(body, dict):
        raise NetworkError(f"Unexpected response body: {body!r}")
    return body


class UploadApiClient(_RestClient):
    """Client of the storage-facing Upload API."""

    def start_single(self, request: StartUploadRequest) -> SingleUploadTarget:
        """Request one presigned URL for a whole file."""
        body = self._make_request("POST", "/api/upload", json=request.model_dump())
        return SingleUploadTarget.model_validate(_unwrap(body))

    def complete_single(self, upload_id: str) -> None:
        self._make_request("POST", "/api/upload/complete", json={"upload_id": upload_id})

    def start_multipart(self, request: StartMultipartRequest) -> MultipartStart:
        body = self._make_request(
            "POST", "/api/upload/multipart/start", json=request.model_dump()
        )
        return MultipartStart.model_validate(_unwrap(body))

    def get_part_url(self, upload_id: str, file_name: str, part_number: int) -> str:
        """Presigned URL for one part."""
        body = self._make_request(
            "POST",
            "/api/upload/multipart/upload",
            json={
                "upload_id": upload_id,
                "file_name": file_name,
                "part_number": part_number,
            },
        )
        url = _unwrap(body).get("url")
        if not url:
            raise NetworkError(f"No upload URL returned for part {part_number}")
        return url

    def confirm_part(
        self, upload_id: str, file_name: str, part_number: int, etag: str
    ) -> str:
        body = self._make_request(
            "POST",
            "/api/upload/multipart/confirm",
            json={
                "upload_id": upload_id,
                "file_name": file_name,
                "part_number": part_number,
                "etag": etag,
            },
        )
        return (body or {}).get("status", "") if isinstance(body, dict) else ""

    def complete_multipart(self, request: CompleteMultipartRequest) -> Dict[str, Any]:
        """Finalize a multipart upload. Parts must be sorted ascending."""
        payload = request.model_dump(by_alias=True)
        body = self._make_request("POST", "/api/upload/multipart/complete", json=payload)
        return body if isinstance(body, dict) else {}

    def multipart_status(self, upload_id: str) -> str:
        body = self._make_request(
            "POST", "/api/upload/multipart/status", json={"upload_id": upload_id}
        )
        return body.get("message", "") if isinstance(body, dict) else ""

    def abort_multipart(self, upload_id: str, file_name: str) -> bool:
        body = self._make_request(
            "POST",
            "/api/upload/multipart/abort",
            json={"upload_id": upload_id, "file_name": file_name},
        )
        return bool(body.get("aborted")) if isinstance(body, dict) else False

    def get_upload(self, upload_id: str) -> Dict[str, Any]:
        """Server-side record of an upload, including its processing status."""
        return _unwrap(self._make_request("GET", f"/api/upload/{upload_id}"))


class EntityApiClient(_RestClient):
    """Client of the Entity API that owns the logical image records."""

    def create_entity(self, request: CreateEntityRequest) -> str:
        """Create the image record and return its id."""
        body = _unwrap(
            self._make_request(
                "POST", "/images", json=request.model_dump(by_alias=True)
            )
        )
        entity_id = body.get("id")
        if not entity_id:
            raise NetworkError(f"Entity API returned no id: {body}")
        return str(entity_id)

    def update_status(self, entity_id: str, status: ImageStatus) -> None:
        self._make_request(
            "PUT",
            "/images/update-status",
            json={"id": entity_id, "statusId": str(int(status))},
        )
        logger.debug(f"Entity {entity_id} status set to {ImageStatus(status).name}")

    def abort_entity(self, entity_id: str) -> None:
        self._make_request("PUT", f"/images/abort-image-upload/{entity_id}", json={})


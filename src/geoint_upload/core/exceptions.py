"""
Exception classes for GeoINT Upload.

Provides the error taxonomy used by the upload engine and its API clients.
"""

from typing import Any, Dict, Optional


class GeointUploadError(Exception):
    """Base exception for all GeoINT Upload errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ConfigurationError(GeointUploadError):
    """Raised for configuration-related errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(GeointUploadError):
    """Raised when caller-supplied file metadata is rejected."""

    def __init__(self, field: str, value: Any, message: str) -> None:
        details = {"field": field}
        if isinstance(value, str) and len(value) > 64:
            details["value"] = value[:64] + "..."
        else:
            details["value"] = value
        super().__init__(f"Validation error for {field}: {message}", details)
        self.field = field
        self.value = value


class NetworkError(GeointUploadError):
    """Raised when a request to the Upload or Entity API fails."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        details = {"status_code": status_code} if status_code else {}
        super().__init__(message, details)
        self.status_code = status_code


class ApiError(NetworkError):
    """Raised when an API answers with a well-formed error payload."""

    def __init__(
        self, message: str, status_code: Optional[int] = None, payload: Any = None
    ) -> None:
        super().__init__(message, status_code)
        self.payload = payload
        if payload is not None:
            self.details["payload"] = payload


class UploadError(GeointUploadError):
    """Raised for upload-related errors."""

    def __init__(self, message: str, file_name: Optional[str] = None) -> None:
        details = {"file_name": file_name} if file_name else {}
        super().__init__(message, details)
        self.file_name = file_name


class TransientPartError(UploadError):
    """Raised when a single part attempt fails in a way that can be retried."""

    def __init__(
        self, message: str, part_number: int, file_name: Optional[str] = None
    ) -> None:
        super().__init__(message, file_name)
        self.part_number = part_number
        self.details["part_number"] = part_number


class FatalUploadError(UploadError):
    """Raised when a file transfer cannot complete.

    The remote entity is marked failed and any resume state is kept so a
    later attempt can pick up the committed parts.
    """

    def __init__(
        self,
        message: str,
        file_name: Optional[str] = None,
        part_number: Optional[int] = None,
    ) -> None:
        super().__init__(message, file_name)
        self.part_number = part_number
        if part_number is not None:
            self.details["part_number"] = part_number


class UserCancelledError(GeointUploadError):
    """Raised inside the engine when the user cancelled the active transfer."""

    def __init__(self, message: str = "Upload cancelled by user") -> None:
        super().__init__(message)

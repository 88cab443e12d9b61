"""Checks applied to caller-supplied metadata before any session is created."""

import json
import logging
from typing import Optional

from defusedxml import ElementTree
from defusedxml.common import DefusedXmlException

from .config import MAX_METADATA_BYTES
from .exceptions import ValidationError
from .models import FileDescriptor

logger = logging.getLogger(__name__)


def validate_metadata(
    metadata: Optional[str], max_bytes: int = MAX_METADATA_BYTES
) -> None:
    """Validate a free-form metadata blob.

    Empty metadata is accepted. Text that looks like JSON (starts with ``{``
    or ``[``) must parse as JSON, text that starts with ``<`` must be
    well-formed XML. Anything else is accepted as plain text.
    """
    if not metadata:
        return

    size = len(metadata.encode("utf-8"))
    if size > max_bytes:
        raise ValidationError(
            "metadata",
            metadata,
            f"metadata is {size} bytes, limit is {max_bytes // 1024} KB",
        )

    text = metadata.strip()
    if text.startswith("{") or text.startswith("["):
        try:
            json.loads(text)
        except ValueError as e:
            raise ValidationError("metadata", metadata, f"invalid JSON: {e}") from e
    elif text.startswith("<"):
        try:
            ElementTree.fromstring(text)
        except (ElementTree.ParseError, DefusedXmlException) as e:
            raise ValidationError("metadata", metadata, f"invalid XML: {e}") from e


def validate_file(descriptor: FileDescriptor, max_metadata_bytes: int) -> None:
    """Validate everything about a file that can be checked locally."""
    try:
        validate_metadata(descriptor.metadata, max_metadata_bytes)
    except ValidationError as e:
        e.details["file_name"] = descriptor.name
        logger.warning(f"Rejected metadata of {descriptor.name}: {e.message}")
        raise

"""Direct-to-bucket backend for deployments without the REST gateway.

Implements both the Upload API and the Entity API against an S3-compatible
bucket. Bytes still travel through presigned URLs, so the engine drives it
exactly like the REST clients. Entity records are small JSON documents kept
under the ``.entities/`` prefix of the bucket.
"""

import datetime
import json
import logging
import time
import uuid
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from .config import S3Config
from .exceptions import NetworkError, UploadError
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

ENTITY_PREFIX = ".entities/"


class S3UploadBackend:
    """Upload and Entity API backed by one S3 bucket."""

    def __init__(self, config: S3Config):
        self.config = config
        self.bucket = config.bucket
        self.prefix = config.prefix
        self.max_retries = config.max_retries

        self.session = boto3.session.Session(
            aws_access_key_id=config.access_key,
            aws_secret_access_key=config.secret_key,
            region_name=config.region,
        )
        self.botocore_cfg = Config(
            region_name=config.region,
            retries={"max_attempts": self.max_retries, "mode": "standard"},
            signature_version="s3v4",
        )
        self.s3 = self.session.client(
            "s3", config=self.botocore_cfg, endpoint_url=config.endpoint_url
        )

        # upload_id -> (key, size) of single-put uploads started by this process
        self._single_uploads: Dict[str, Tuple[str, int]] = {}
        self._lock = Lock()

    @staticmethod
    def is_524_error(exc: Exception) -> bool:
        """Return True if the exception wraps a 524 timeout response."""
        if isinstance(exc, ClientError):
            meta = exc.response.get("ResponseMetadata", {})
            return meta.get("HTTPStatusCode") == 524
        return False

    @staticmethod
    def is_no_such_upload_error(exc: Exception) -> bool:
        """Return True if the exception reports a missing multipart upload."""
        if isinstance(exc, ClientError):
            return exc.response.get("Error", {}).get("Code") == "NoSuchUpload"
        return False

    def call_with_retry(self, description: str, func: Callable[[], Any]) -> Any:
        """Call ``func`` retrying on HTTP 524 or timeout errors.

        Other failures are raised as NetworkError.
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                return func()
            except (ReadTimeoutError, ConnectTimeoutError) as exc:
                logger.warning(f"{description}: request timed out (attempt {attempt}): {exc}")
                if attempt == self.max_retries:
                    logger.error(f"{description}: exceeded max_retries for timeout")
                    raise NetworkError(f"{description} timed out: {exc}") from exc
            except ClientError as exc:
                if not self.is_524_error(exc):
                    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
                    raise NetworkError(f"{description} failed: {exc}", status) from exc
                logger.warning(f"{description}: received 524 response (attempt {attempt})")
                if attempt == self.max_retries:
                    logger.error(f"{description}: exceeded max_retries for 524")
                    raise NetworkError(f"{description} failed: {exc}", 524) from exc
            except BotoCoreError as exc:
                raise NetworkError(f"{description} failed: {exc}") from exc

            backoff = 2**attempt
            logger.info(f"{description}: retrying in {backoff}s...")
            time.sleep(backoff)

    def object_key(self, file_name: str) -> str:
        return f"{self.prefix}{file_name}"

    def _presign(self, method: str, params: Dict[str, Any]) -> str:
        return self.s3.generate_presigned_url(
            method,
            Params={"Bucket": self.bucket, **params},
            ExpiresIn=self.config.url_expires_in,
        )

    # Upload API
    def start_single(self, request: StartUploadRequest) -> SingleUploadTarget:
        key = self.object_key(request.file_name)
        upload_id = uuid.uuid4().hex
        url = self._presign(
            "put_object", {"Key": key, "ContentType": request.file_type}
        )
        with self._lock:
            self._single_uploads[upload_id] = (key, request.file_size)
        logger.info(f"Presigned single upload of {key}")
        return SingleUploadTarget(upload_id=upload_id, url=url, item_id=uuid.uuid4().hex)

    def complete_single(self, upload_id: str) -> None:
        """Verify the object landed with the expected size."""
        with self._lock:
            entry = self._single_uploads.pop(upload_id, None)
        if entry is None:
            raise UploadError(f"Unknown single upload {upload_id}")
        key, expected_size = entry
        head = self.call_with_retry(
            "head_object", lambda: self.s3.head_object(Bucket=self.bucket, Key=key)
        )
        if head.get("ContentLength") != expected_size:
            raise UploadError(
                f"Uploaded size {head.get('ContentLength')} of {key} "
                f"does not match expected {expected_size}"
            )

    def start_multipart(self, request: StartMultipartRequest) -> MultipartStart:
        key = self.object_key(request.file_name)
        resp = self.call_with_retry(
            "create_multipart_upload",
            lambda: self.s3.create_multipart_upload(
                Bucket=self.bucket, Key=key, ContentType=request.file_type
            ),
        )
        logger.info(f"Created multipart upload {resp['UploadId']} for {key}")
        return MultipartStart(upload_id=resp["UploadId"], item_id=uuid.uuid4().hex)

    def get_part_url(self, upload_id: str, file_name: str, part_number: int) -> str:
        return self._presign(
            "upload_part",
            {
                "Key": self.object_key(file_name),
                "UploadId": upload_id,
                "PartNumber": part_number,
            },
        )

    def confirm_part(
        self, upload_id: str, file_name: str, part_number: int, etag: str
    ) -> str:
        """Check that storage holds ``part_number`` with ``etag``."""
        key = self.object_key(file_name)
        resp = self.call_with_retry(
            f"list_parts {part_number}",
            lambda: self.s3.list_parts(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                PartNumberMarker=part_number - 1,
                MaxParts=1,
            ),
        )
        parts = resp.get("Parts", [])
        if not parts or parts[0]["PartNumber"] != part_number:
            raise UploadError(f"Part {part_number} not found in storage", file_name)
        stored = parts[0]["ETag"].strip('"')
        if stored != etag.strip('"'):
            raise UploadError(
                f"Part {part_number} ETag mismatch: {stored} != {etag}", file_name
            )
        return "confirmed"

    def complete_multipart(self, request: CompleteMultipartRequest) -> Dict[str, Any]:
        key = self.object_key(request.file_name)
        parts = [
            {"PartNumber": p.part_number, "ETag": p.etag} for p in request.parts
        ]
        try:
            self.call_with_retry(
                "complete_multipart_upload",
                lambda: self.s3.complete_multipart_upload(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=request.upload_id,
                    MultipartUpload={"Parts": parts},
                ),
            )
        except NetworkError as exc:
            if not self.is_no_such_upload_error(exc.__cause__):
                raise
            # A previous attempt may have merged the parts already.
            logger.info("Upload session missing; checking object state")
            head = self.call_with_retry(
                "head_object", lambda: self.s3.head_object(Bucket=self.bucket, Key=key)
            )
            logger.info(f"Object {key} exists ({head.get('ContentLength')} bytes)")
        logger.info(f"Completed multipart upload {request.upload_id} for {key}")
        return {"message": "completed", "upload_id": request.upload_id}

    def abort_multipart(self, upload_id: str, file_name: str) -> bool:
        key = self.object_key(file_name)
        self.call_with_retry(
            "abort_multipart_upload",
            lambda: self.s3.abort_multipart_upload(
                Bucket=self.bucket, Key=key, UploadId=upload_id
            ),
        )
        logger.info(f"Aborted multipart upload {upload_id} for {key}")
        return True

    # Entity API
    def _entity_key(self, entity_id: str) -> str:
        return f"{self.prefix}{ENTITY_PREFIX}{entity_id}.json"

    def _read_entity(self, entity_id: str) -> Dict[str, Any]:
        key = self._entity_key(entity_id)
        resp = self.call_with_retry(
            "get_object", lambda: self.s3.get_object(Bucket=self.bucket, Key=key)
        )
        return json.loads(resp["Body"].read())

    def _write_entity(self, entity_id: str, record: Dict[str, Any]) -> None:
        key = self._entity_key(entity_id)
        body = json.dumps(record).encode("utf-8")
        self.call_with_retry(
            "put_object",
            lambda: self.s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType="application/json",
            ),
        )

    def create_entity(self, request: CreateEntityRequest) -> str:
        entity_id = uuid.uuid4().hex
        record = request.model_dump(by_alias=True)
        record.update(
            {
                "id": entity_id,
                "key": self.object_key(request.file_name),
                "statusId": str(int(ImageStatus.UPLOAD_PENDING)),
            }
        )
        self._write_entity(entity_id, record)
        logger.debug(f"Created entity {entity_id} for {request.file_name}")
        return entity_id

    def update_status(self, entity_id: str, status: ImageStatus) -> None:
        record = self._read_entity(entity_id)
        record["statusId"] = str(int(status))
        self._write_entity(entity_id, record)
        logger.debug(f"Entity {entity_id} status set to {ImageStatus(status).name}")

    def abort_entity(self, entity_id: str) -> None:
        """Mark the entity aborted and abort its multipart session, if any."""
        record = self._read_entity(entity_id)
        upload_id = record.get("uploadId")
        file_name = record.get("fileName")
        record["statusId"] = str(int(ImageStatus.ABORTED))
        self._write_entity(entity_id, record)

        if upload_id and file_name:
            try:
                self.abort_multipart(upload_id, file_name)
            except NetworkError as e:
                if not self.is_no_such_upload_error(e.__cause__):
                    raise
                logger.debug(f"Multipart upload {upload_id} already gone")

    def cleanup_abandoned_uploads(
        self, max_age_hours: int = 24, keep_upload_ids: Iterable[str] = ()
    ) -> int:
        """Abort multipart uploads older than ``max_age_hours``.

        Sessions listed in ``keep_upload_ids`` (still resumable locally) are
        left alone. Returns the number of uploads aborted.
        """
        keep = set(keep_upload_ids)
        cutoff_time = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(
            hours=max_age_hours
        )
        cleaned_count = 0

        paginator = self.s3.get_paginator("list_multipart_uploads")
        kwargs = {"Bucket": self.bucket}
        if self.prefix:
            kwargs["Prefix"] = self.prefix
        for page in paginator.paginate(**kwargs):
            for upload in page.get("Uploads", []):
                upload_id = upload["UploadId"]
                if upload["Initiated"] >= cutoff_time or upload_id in keep:
                    continue
                key = upload["Key"]
                try:
                    self.s3.abort_multipart_upload(
                        Bucket=self.bucket, Key=key, UploadId=upload_id
                    )
                    logger.info(f"Cleaned up abandoned upload: {key} ({upload_id})")
                    cleaned_count += 1
                except (ClientError, BotoCoreError) as e:
                    logger.warning(f"Failed to clean up upload {upload_id}: {e}")

        if cleaned_count > 0:
            logger.info(f"Cleaned up {cleaned_count} abandoned uploads from {self.bucket}")
        return cleaned_count

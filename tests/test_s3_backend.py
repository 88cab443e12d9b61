"""Tests for the direct-to-bucket backend."""

import datetime
import io
import json
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from geoint_upload.core.config import S3Config
from geoint_upload.core.exceptions import NetworkError, UploadError
from geoint_upload.core.models import (
    CompleteMultipartRequest,
    CreateEntityRequest,
    ImageStatus,
    PartRecord,
    StartMultipartRequest,
    StartUploadRequest,
)
from geoint_upload.core.s3_client import S3UploadBackend


def client_error(code, status=400):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Operation",
    )


@pytest.fixture
def s3():
    return MagicMock()


@pytest.fixture
def backend(s3):
    with patch("geoint_upload.core.s3_client.boto3") as boto3:
        boto3.session.Session.return_value.client.return_value = s3
        backend = S3UploadBackend(
            S3Config(bucket="imagery", prefix="uploads/", max_retries=2)
        )
    return backend


def upload_request(cls=StartUploadRequest, **extra):
    return cls(
        file_name="scene.tif",
        file_size=300,
        file_type="image/tiff",
        imaging_date="2024-01-01T00:00:00Z",
        image_type=1,
        name="Scene",
        org_id="org-1",
        user_id="user-1",
        **extra,
    )


def entity_request(**overrides):
    values = dict(
        service_id="1",
        name="Scene",
        file_name="scene.tif",
        file_size=300,
        file_type="image/tiff",
        user_id="user-1",
        organization_id="org-1",
        item_id="i1",
        upload_id="mp-1",
        chunk_size=128,
        chunk_amount=3,
    )
    values.update(overrides)
    return CreateEntityRequest(**values)


def test_single_upload_is_presigned_and_verified(backend, s3):
    """Test the single-put path against the bucket."""
    s3.generate_presigned_url.return_value = "https://s3/put"
    s3.head_object.return_value = {"ContentLength": 300}

    target = backend.start_single(upload_request())
    backend.complete_single(target.upload_id)

    assert target.url == "https://s3/put"
    method = s3.generate_presigned_url.call_args.args[0]
    params = s3.generate_presigned_url.call_args.kwargs["Params"]
    assert method == "put_object"
    assert params["Key"] == "uploads/scene.tif"
    assert params["Bucket"] == "imagery"
    s3.head_object.assert_called_once_with(Bucket="imagery", Key="uploads/scene.tif")


def test_single_upload_size_mismatch(backend, s3):
    s3.generate_presigned_url.return_value = "https://s3/put"
    s3.head_object.return_value = {"ContentLength": 10}
    target = backend.start_single(upload_request())

    with pytest.raises(UploadError, match="does not match"):
        backend.complete_single(target.upload_id)


def test_multipart_lifecycle(backend, s3):
    """Test start, part URL, confirm and complete of a multipart upload."""
    s3.create_multipart_upload.return_value = {"UploadId": "mp-1"}
    s3.generate_presigned_url.return_value = "https://s3/part"
    s3.list_parts.return_value = {"Parts": [{"PartNumber": 2, "ETag": '"e2"'}]}

    start = backend.start_multipart(upload_request(StartMultipartRequest, chunk_size=128))
    url = backend.get_part_url(start.upload_id, "scene.tif", 2)
    status = backend.confirm_part(start.upload_id, "scene.tif", 2, '"e2"')
    backend.complete_multipart(
        CompleteMultipartRequest(
            file_name="scene.tif",
            upload_id="mp-1",
            parts=[PartRecord(part_number=1, etag='"e1"'), PartRecord(part_number=2, etag='"e2"')],
        )
    )

    assert start.upload_id == "mp-1"
    assert url == "https://s3/part"
    assert s3.generate_presigned_url.call_args.kwargs["Params"]["PartNumber"] == 2
    assert status == "confirmed"
    s3.list_parts.assert_called_once_with(
        Bucket="imagery",
        Key="uploads/scene.tif",
        UploadId="mp-1",
        PartNumberMarker=1,
        MaxParts=1,
    )
    parts = s3.complete_multipart_upload.call_args.kwargs["MultipartUpload"]["Parts"]
    assert parts == [{"PartNumber": 1, "ETag": '"e1"'}, {"PartNumber": 2, "ETag": '"e2"'}]


def test_confirm_rejects_wrong_etag(backend, s3):
    s3.list_parts.return_value = {"Parts": [{"PartNumber": 1, "ETag": '"other"'}]}

    with pytest.raises(UploadError, match="ETag mismatch"):
        backend.confirm_part("mp-1", "scene.tif", 1, '"e1"')


def test_confirm_rejects_missing_part(backend, s3):
    s3.list_parts.return_value = {"Parts": []}

    with pytest.raises(UploadError, match="not found"):
        backend.confirm_part("mp-1", "scene.tif", 1, '"e1"')


def test_complete_after_merge_checks_object(backend, s3):
    """Test that a vanished session with an existing object counts as complete."""
    s3.complete_multipart_upload.side_effect = client_error("NoSuchUpload", 404)
    s3.head_object.return_value = {"ContentLength": 300}

    backend.complete_multipart(
        CompleteMultipartRequest(
            file_name="scene.tif",
            upload_id="mp-1",
            parts=[PartRecord(part_number=1, etag="e1")],
        )
    )

    s3.head_object.assert_called_once()


def test_524_is_retried(backend, s3):
    """Test that gateway timeouts are retried with back-off."""
    s3.create_multipart_upload.side_effect = [
        client_error("GatewayTimeout", 524),
        {"UploadId": "mp-1"},
    ]

    with patch("geoint_upload.core.s3_client.time.sleep") as sleep:
        start = backend.start_multipart(upload_request(StartMultipartRequest, chunk_size=128))

    assert start.upload_id == "mp-1"
    sleep.assert_called_once_with(2)


def test_other_client_errors_are_network_errors(backend, s3):
    s3.create_multipart_upload.side_effect = client_error("AccessDenied", 403)

    with pytest.raises(NetworkError) as exc_info:
        backend.start_multipart(upload_request(StartMultipartRequest, chunk_size=128))

    assert exc_info.value.status_code == 403


def test_entity_records_are_json_documents(backend, s3):
    """Test that entities are stored and updated under the entities prefix."""
    entity_id = backend.create_entity(entity_request())

    kwargs = s3.put_object.call_args.kwargs
    assert kwargs["Key"] == f"uploads/.entities/{entity_id}.json"
    record = json.loads(kwargs["Body"])
    assert record["statusId"] == "2"
    assert record["uploadId"] == "mp-1"

    s3.get_object.return_value = {"Body": io.BytesIO(kwargs["Body"])}
    backend.update_status(entity_id, ImageStatus.IN_PROGRESS)

    assert json.loads(s3.put_object.call_args.kwargs["Body"])["statusId"] == "4"


def test_abort_entity_aborts_multipart_session(backend, s3):
    record = json.dumps({"id": "e1", "uploadId": "mp-1", "fileName": "scene.tif"})
    s3.get_object.return_value = {"Body": io.BytesIO(record.encode())}

    backend.abort_entity("e1")

    assert json.loads(s3.put_object.call_args.kwargs["Body"])["statusId"] == "6"
    s3.abort_multipart_upload.assert_called_once_with(
        Bucket="imagery", Key="uploads/scene.tif", UploadId="mp-1"
    )


def test_abort_entity_tolerates_missing_session(backend, s3):
    record = json.dumps({"id": "e1", "uploadId": "single", "fileName": "scene.tif"})
    s3.get_object.return_value = {"Body": io.BytesIO(record.encode())}
    s3.abort_multipart_upload.side_effect = client_error("NoSuchUpload", 404)

    backend.abort_entity("e1")


def test_cleanup_abandoned_uploads(backend, s3):
    """Test that only old sessions without a resume state are aborted."""
    now = datetime.datetime.now(datetime.timezone.utc)
    old = now - datetime.timedelta(hours=48)
    s3.get_paginator.return_value.paginate.return_value = [
        {
            "Uploads": [
                {"UploadId": "old", "Key": "uploads/a.tif", "Initiated": old},
                {"UploadId": "kept", "Key": "uploads/b.tif", "Initiated": old},
                {"UploadId": "fresh", "Key": "uploads/c.tif", "Initiated": now},
            ]
        }
    ]

    cleaned = backend.cleanup_abandoned_uploads(24, keep_upload_ids=["kept"])

    assert cleaned == 1
    s3.abort_multipart_upload.assert_called_once_with(
        Bucket="imagery", Key="uploads/a.tif", UploadId="old"
    )
    s3.get_paginator.return_value.paginate.assert_called_once_with(
        Bucket="imagery", Prefix="uploads/"
    )

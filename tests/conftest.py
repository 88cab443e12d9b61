"""Pytest configuration and fixtures."""

import threading
import time
from typing import Callable, Dict, List, Optional, Set

import pytest

from geoint_upload.core.config import UploaderConfig
from geoint_upload.core.events import UploadListener
from geoint_upload.core.exceptions import NetworkError
from geoint_upload.core.models import (
    BytesSource,
    FileDescriptor,
    MultipartStart,
    SingleUploadTarget,
)
from geoint_upload.core.orchestrator import UploadOrchestrator
from geoint_upload.core.progress import ProgressAggregator
from geoint_upload.core.resume_store import ResumeStateStore

LAST_MODIFIED = 1_700_000_000_000


def make_file(name: str = "scene.tif", size: int = 100, **kwargs) -> FileDescriptor:
    """In-memory file with deterministic content."""
    data = bytes(i % 256 for i in range(size))
    kwargs.setdefault("last_modified", LAST_MODIFIED)
    return FileDescriptor(name=name, size=size, source=BytesSource(data), **kwargs)


class FakeUploadApi:
    """Upload API that records calls and hands out predictable ids."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.confirmed: List[tuple] = []
        self.completed: List = []
        self._lock = threading.Lock()
        self._sessions = 0

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]

    def start_single(self, request):
        self._record("start_single", request.file_name)
        return SingleUploadTarget(
            upload_id="single-1", url="https://storage/single-1/1", item_id="item-s"
        )

    def complete_single(self, upload_id):
        self._record("complete_single", upload_id)

    def start_multipart(self, request):
        with self._lock:
            self._sessions += 1
            n = self._sessions
        self._record("start_multipart", request.file_name, request.chunk_size)
        return MultipartStart(upload_id=f"up-{n}", item_id=f"item-{n}")

    def get_part_url(self, upload_id, file_name, part_number):
        self._record("get_part_url", upload_id, part_number)
        return f"https://storage/{upload_id}/{part_number}"

    def confirm_part(self, upload_id, file_name, part_number, etag):
        with self._lock:
            self.confirmed.append((upload_id, part_number, etag))
        return "confirmed"

    def complete_multipart(self, request):
        self._record("complete_multipart", request.upload_id)
        with self._lock:
            self.completed.append(request)
        return {"message": "ok"}


class FakeEntityApi:
    """Entity API that records created, updated and aborted entities."""

    def __init__(self):
        self.created: List = []
        self.statuses: List[tuple] = []
        self.aborted: List[str] = []
        self.fail_abort = False
        self._lock = threading.Lock()

    def create_entity(self, request):
        with self._lock:
            self.created.append(request)
            return f"ent-{len(self.created)}"

    def update_status(self, entity_id, status):
        with self._lock:
            self.statuses.append((entity_id, status))

    def abort_entity(self, entity_id):
        with self._lock:
            self.aborted.append(entity_id)
        if self.fail_abort:
            raise NetworkError("abort failed", 500)


class FakeTransport:
    """Part transport that never touches the network.

    ``failures`` maps a part number to how many attempts fail before it
    succeeds; parts in ``always_fail`` never succeed. ``on_put`` is called at
    the start of every transfer with (part_number, token).
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.delays: Dict[int, float] = {}
        self.failures: Dict[int, int] = {}
        self.always_fail: Set[int] = set()
        self.missing_etag: Dict[int, int] = {}
        self.on_put: Optional[Callable] = None
        self.attempts: Dict[int, int] = {}
        self.completed_order: List[int] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def put(self, url, data, *, token, on_progress=None, content_type=None):
        part_number = int(url.rsplit("/", 1)[1])
        token.raise_if_cancelled()
        with self._lock:
            self.attempts[part_number] = self.attempts.get(part_number, 0) + 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_put:
                self.on_put(part_number, token)
            time.sleep(self.delays.get(part_number, self.delay))
            token.raise_if_cancelled()
            if on_progress:
                on_progress(len(data) // 2)
            with self._lock:
                remaining = self.failures.get(part_number, 0)
                if remaining:
                    self.failures[part_number] = remaining - 1
            if remaining or part_number in self.always_fail:
                raise NetworkError(f"Transfer failed for part {part_number}", 503)
            if on_progress:
                on_progress(len(data))
            with self._lock:
                self.completed_order.append(part_number)
                missing = self.missing_etag.get(part_number, 0)
                if missing:
                    self.missing_etag[part_number] = missing - 1
            return "" if missing else f'"etag-{part_number}"'
        finally:
            with self._lock:
                self.in_flight -= 1


class RecordingListener(UploadListener):
    def __init__(self):
        self.events = []
        self.statuses = []
        self.alerts = []
        self._lock = threading.Lock()

    def on_progress(self, event):
        with self._lock:
            self.events.append(event)

    def on_file_status(self, file_index, file_name, status, progress):
        with self._lock:
            self.statuses.append((file_index, file_name, status, progress))

    def on_alert(self, alert):
        with self._lock:
            self.alerts.append(alert)


@pytest.fixture
def config(tmp_path):
    """Small threshold and chunk size so tests move a few bytes only."""
    return UploaderConfig(
        api_url="http://entity.test",
        upload_api_url="http://upload.test",
        owner_id="user-1",
        organization_id="org-1",
        multipart_threshold=100,
        chunk_size=40,
        concurrency=2,
        max_part_retries=3,
        retry_base_delay=0,
        state_dir=tmp_path / "state",
    )


@pytest.fixture
def store(config):
    return ResumeStateStore(config.state_dir)


@pytest.fixture
def upload_api():
    return FakeUploadApi()


@pytest.fixture
def entity_api():
    return FakeEntityApi()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def progress(listener):
    return ProgressAggregator(1, listener)


@pytest.fixture
def orchestrator(upload_api, entity_api, config, store, transport, listener):
    return UploadOrchestrator(
        upload_api=upload_api,
        entity_api=entity_api,
        config=config,
        store=store,
        transport=transport,
        listener=listener,
    )

"""Bounded pool of workers that transfer the parts of one multipart upload."""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from queue import Empty, Queue
from threading import Event, Lock
from typing import Dict, Iterable, List, Optional, Tuple

from .cancellation import CancelToken
from .config import UploaderConfig
from .exceptions import FatalUploadError, TransientPartError, UserCancelledError
from .models import FileDescriptor, PartRecord, ResumeState, UploadSession
from .progress import ProgressAggregator
from .resume_store import ResumeStateStore

logger = logging.getLogger(__name__)


def total_parts_for(size: int, chunk_size: int) -> int:
    """Number of parts of a file; never less than one."""
    return max(1, math.ceil(size / chunk_size))


class MultipartJob:
    """One file's multipart transfer as seen by the worker pool."""

    def __init__(
        self,
        *,
        file_index: int,
        descriptor: FileDescriptor,
        session: UploadSession,
        resume_key: str,
        service_id: str,
        completed: Optional[Iterable[PartRecord]] = None,
    ) -> None:
        self.file_index = file_index
        self.descriptor = descriptor
        self.session = session
        self.resume_key = resume_key
        self.service_id = service_id
        self._lock = Lock()
        self._completed: Dict[int, PartRecord] = {}
        for part in completed or []:
            if 1 <= part.part_number <= session.total_parts:
                self._completed.setdefault(part.part_number, part)

    def part_range(self, part_number: int) -> Tuple[int, int]:
        chunk = self.session.chunk_size
        start = (part_number - 1) * chunk
        return start, min(part_number * chunk, self.descriptor.size)

    def part_size(self, part_number: int) -> int:
        start, end = self.part_range(part_number)
        return end - start

    def pending_parts(self) -> List[int]:
        with self._lock:
            return [
                n
                for n in range(1, self.session.total_parts + 1)
                if n not in self._completed
            ]

    def committed_bytes(self) -> Dict[int, int]:
        with self._lock:
            numbers = list(self._completed)
        return {n: self.part_size(n) for n in numbers}

    def add(self, part: PartRecord) -> None:
        with self._lock:
            self._completed.setdefault(part.part_number, part)

    def sorted_parts(self) -> List[PartRecord]:
        with self._lock:
            return sorted(self._completed.values(), key=lambda p: p.part_number)

    def resume_state(self, parts: Optional[List[PartRecord]] = None) -> ResumeState:
        return ResumeState(
            upload_id=self.session.session_id,
            item_id=self.session.item_id,
            image_id=self.session.entity_id,
            service_id=self.service_id,
            chunk_size=self.session.chunk_size,
            completed_parts=parts if parts is not None else self.sorted_parts(),
        )


class PartUploadPool:
    """Transfers pending parts with at most ``concurrency`` in flight.

    Each worker takes the next part number from a shared queue until the
    queue is empty. After the first unrecoverable failure, or a
    cancellation, no worker starts a new part; the pool waits for parts
    already in flight and then raises.
    """

    def __init__(
        self,
        *,
        upload_api,
        transport,
        store: ResumeStateStore,
        progress: ProgressAggregator,
        config: UploaderConfig,
    ) -> None:
        self.upload_api = upload_api
        self.transport = transport
        self.store = store
        self.progress = progress
        self.config = config

    def run(
        self, job: MultipartJob, pending: List[int], token: CancelToken
    ) -> List[PartRecord]:
        """Upload ``pending`` parts and return all committed parts, sorted."""
        concurrency = min(self.config.concurrency, job.session.total_parts)
        queue: "Queue[int]" = Queue()
        for part_number in pending:
            queue.put(part_number)

        stop = Event()
        errors: List[Exception] = []
        errors_lock = Lock()

        def worker(worker_id: int) -> None:
            while not stop.is_set():
                try:
                    part_number = queue.get_nowait()
                except Empty:
                    return
                try:
                    self.upload_part(job, part_number, token)
                except Exception as e:
                    with errors_lock:
                        errors.append(e)
                    stop.set()
                    return
            logger.debug(f"Worker {worker_id} stopped")

        logger.info(
            f"Uploading {len(pending)} of {job.session.total_parts} parts "
            f"of {job.descriptor.name} with {concurrency} workers"
        )
        with ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix="part-worker"
        ) as executor:
            futures = [executor.submit(worker, i) for i in range(concurrency)]
            for future in futures:
                future.result()

        if errors:
            if token.cancelled or any(
                isinstance(e, UserCancelledError) for e in errors
            ):
                raise UserCancelledError()
            raise errors[0]
        return job.sorted_parts()

    def upload_part(
        self, job: MultipartJob, part_number: int, token: CancelToken
    ) -> PartRecord:
        """Transfer one part, retrying transient failures with back-off."""
        max_retries = self.config.max_part_retries
        retry_count = 0
        while True:
            token.raise_if_cancelled()
            try:
                return self._attempt(job, part_number, token)
            except UserCancelledError:
                raise
            except Exception as exc:
                if token.cancelled:
                    raise UserCancelledError() from exc
                if retry_count >= max_retries:
                    logger.error(
                        f"Part {part_number}: failed after {max_retries} retries: {exc}"
                    )
                    raise FatalUploadError(
                        f"Part {part_number} failed after {max_retries} retries: {exc}",
                        job.descriptor.name,
                        part_number,
                    ) from exc

                delay = self.config.retry_base_delay * 2**retry_count
                logger.warning(
                    f"Part {part_number}: attempt {retry_count + 1} failed: {exc}; "
                    f"retrying in {delay:g}s ({retry_count + 1}/{max_retries})"
                )
                token.sleep(delay)
                self.progress.reset_part(job.file_index, part_number)
                retry_count += 1

    def _attempt(
        self, job: MultipartJob, part_number: int, token: CancelToken
    ) -> PartRecord:
        descriptor = job.descriptor
        session_id = job.session.session_id
        start, end = job.part_range(part_number)
        data = descriptor.read_range(start, end)

        url = self.upload_api.get_part_url(session_id, descriptor.name, part_number)
        logger.debug(f"Part {part_number}: sending bytes {start}-{end}")
        etag = self.transport.put(
            url,
            data,
            token=token,
            on_progress=lambda sent: self.progress.report_part_bytes(
                job.file_index, part_number, sent
            ),
        )
        if not etag:
            raise TransientPartError(
                "Storage response carried no ETag", part_number, descriptor.name
            )

        token.raise_if_cancelled()
        self.upload_api.confirm_part(session_id, descriptor.name, part_number, etag)

        part = PartRecord(part_number=part_number, etag=etag)
        job.add(part)
        token.raise_if_cancelled()
        self.store.put(job.resume_key, job.resume_state([part]))
        logger.info(f"Part {part_number}/{job.session.total_parts}: committed")
        return part

"""Per-file upload state machine: validate, start or resume, transfer, finalize."""

import logging
import time
from typing import List, Optional, Sequence

from .cancellation import CancellationCoordinator, CancelToken, TransferState
from .config import UploaderConfig
from .events import LoggingListener, UploadListener, safe_call
from .exceptions import (
    FatalUploadError,
    GeointUploadError,
    UserCancelledError,
    ValidationError,
)
from .models import (
    Alert,
    CompleteMultipartRequest,
    CreateEntityRequest,
    FileDescriptor,
    FileStatus,
    ImageStatus,
    StartMultipartRequest,
    StartUploadRequest,
    UploadOutcome,
    UploadResult,
    UploadSession,
)
from .progress import ProgressAggregator
from .resume_store import ResumeStateStore, resume_key
from .transport import PartTransport
from .validation import validate_file
from .workers import MultipartJob, PartUploadPool, total_parts_for

logger = logging.getLogger(__name__)


class _FileContext:
    """Mutable bookkeeping of one file's transfer attempt."""

    def __init__(self, index: int, descriptor: FileDescriptor) -> None:
        self.index = index
        self.descriptor = descriptor
        self.resume_key: Optional[str] = None
        self.upload_id: Optional[str] = None
        self.entity_id: Optional[str] = None


class UploadOrchestrator:
    """Uploads batches of files, one file at a time.

    Files below the multipart threshold go up in a single PUT. Larger files
    are split into parts, transferred by a bounded worker pool and resumed
    from the Resume State Store after an interruption.
    """

    def __init__(
        self,
        *,
        upload_api,
        entity_api,
        config: UploaderConfig,
        store: Optional[ResumeStateStore] = None,
        transport: Optional[PartTransport] = None,
        listener: Optional[UploadListener] = None,
        coordinator: Optional[CancellationCoordinator] = None,
    ) -> None:
        self.upload_api = upload_api
        self.entity_api = entity_api
        self.config = config
        self.store = store or ResumeStateStore(config.state_dir)
        self.transport = transport or PartTransport(connect_timeout=config.timeout)
        self.listener = listener or LoggingListener()
        self.coordinator = coordinator or CancellationCoordinator(
            entity_api, self.store, self.listener
        )
        # Entity of an earlier attempt that failed; aborted if a fresh
        # session supersedes it.
        self._stale_entity_id: Optional[str] = None

    def cancel(self) -> bool:
        """Cancel the active transfer. Safe to call from any thread."""
        return self.coordinator.cancel()

    @property
    def state(self) -> TransferState:
        return self.coordinator.state

    def upload(self, files: Sequence[FileDescriptor]) -> List[UploadResult]:
        """Upload ``files`` in order and return one result per file."""
        files = list(files)
        if not files:
            return []

        self.coordinator.reset()
        results: List[Optional[UploadResult]] = [None] * len(files)

        for index, descriptor in enumerate(files):
            try:
                validate_file(descriptor, self.config.max_metadata_bytes)
            except ValidationError as e:
                self._alert("Invalid metadata", e.message, descriptor.name)
                results[index] = UploadResult(
                    file_name=descriptor.name,
                    outcome=UploadOutcome.INVALID,
                    error=e.message,
                )

        progress = ProgressAggregator(
            len(files), self.listener, monotonic=self.config.monotonic_progress
        )
        stop_reason: Optional[UploadOutcome] = None

        for index, descriptor in enumerate(files):
            if results[index] is not None:
                continue
            if stop_reason is not None:
                results[index] = UploadResult(
                    file_name=descriptor.name, outcome=UploadOutcome.SKIPPED
                )
                continue

            ctx = _FileContext(index, descriptor)
            result = self._upload_file(ctx, progress)
            results[index] = result
            if result.outcome in (UploadOutcome.FAILED, UploadOutcome.CANCELLED):
                stop_reason = result.outcome

        return [r for r in results if r is not None]

    # Per-file flow
    def _upload_file(
        self, ctx: _FileContext, progress: ProgressAggregator
    ) -> UploadResult:
        descriptor = ctx.descriptor
        started = time.time()
        try:
            token = self.coordinator.begin(ctx.index, descriptor.name)
            safe_call(
                self.listener.on_file_status,
                ctx.index,
                descriptor.name,
                FileStatus.UPLOADING,
                0,
            )
            if descriptor.size >= self.config.multipart_threshold:
                self._upload_multipart(ctx, token, progress)
            else:
                self._upload_single(ctx, token, progress)
        except Exception as exc:
            progress.discard_file(ctx.index)
            if isinstance(exc, UserCancelledError) or self.coordinator.is_user_cancelled():
                return self._handle_cancelled(ctx)
            return self._handle_failure(ctx, exc)

        self.coordinator.finish(TransferState.COMPLETED)
        safe_call(
            self.listener.on_file_status,
            ctx.index,
            descriptor.name,
            FileStatus.SUCCESS,
            100,
        )
        elapsed = time.time() - started
        speed = (descriptor.size / (1024 * 1024)) / elapsed if elapsed > 0 else 0
        logger.info(
            f"Uploaded {descriptor.name} ({descriptor.size} bytes) "
            f"in {elapsed:.1f}s, {speed:.2f} MB/s"
        )
        return UploadResult(
            file_name=descriptor.name,
            outcome=UploadOutcome.COMPLETED,
            entity_id=ctx.entity_id,
            upload_id=ctx.upload_id,
        )

    def _upload_single(
        self, ctx: _FileContext, token: CancelToken, progress: ProgressAggregator
    ) -> None:
        descriptor = ctx.descriptor
        logger.info(f"Uploading {descriptor.name} with a single request")

        target = self.upload_api.start_single(self._start_request(descriptor))
        ctx.upload_id = target.upload_id
        ctx.entity_id = self.entity_api.create_entity(
            self._entity_request(
                descriptor,
                item_id=target.item_id,
                upload_id=target.upload_id,
                chunk_size=descriptor.size,
                chunk_amount=1,
            )
        )
        self.coordinator.track(ctx.entity_id)

        progress.start_file(ctx.index, descriptor.name, descriptor.size)
        data = descriptor.read_range(0, descriptor.size)
        self.transport.put(
            target.url,
            data,
            token=token,
            on_progress=lambda sent: progress.report_part_bytes(ctx.index, 1, sent),
            content_type=descriptor.content_type,
        )
        self.coordinator.begin_finalize()
        self.upload_api.complete_single(target.upload_id)
        self.entity_api.update_status(ctx.entity_id, ImageStatus.IN_PROGRESS)
        progress.complete_file(ctx.index)

    def _upload_multipart(
        self, ctx: _FileContext, token: CancelToken, progress: ProgressAggregator
    ) -> None:
        descriptor = ctx.descriptor
        chunk_size = self.config.chunk_size
        service_id = str(int(self.config.service))
        total_parts = total_parts_for(descriptor.size, chunk_size)
        key = resume_key(self.config.owner_id, descriptor)
        ctx.resume_key = key

        state = self.store.get(key)
        if state is not None and state.matches(chunk_size, service_id):
            logger.info(
                f"Resuming {descriptor.name}: upload {state.upload_id}, "
                f"{len(state.completed_parts)}/{total_parts} parts committed"
            )
            session = state.to_session(total_parts)
            completed = state.completed_parts
            if self._stale_entity_id == session.entity_id:
                self._stale_entity_id = None
            ctx.upload_id = session.session_id
            ctx.entity_id = session.entity_id
            self.coordinator.track(session.entity_id, key)
        else:
            if state is not None:
                logger.info(
                    f"Stored state of {descriptor.name} does not match "
                    f"(chunk size {state.chunk_size}, service {state.service_id}); "
                    "starting a new session"
                )
            self._abort_stale_entities(state.image_id if state else None)
            session = self._start_session(ctx, total_parts, key, service_id)
            completed = []

        job = MultipartJob(
            file_index=ctx.index,
            descriptor=descriptor,
            session=session,
            resume_key=key,
            service_id=service_id,
            completed=completed,
        )
        progress.start_file(
            ctx.index, descriptor.name, descriptor.size, job.committed_bytes()
        )

        pool = PartUploadPool(
            upload_api=self.upload_api,
            transport=self.transport,
            store=self.store,
            progress=progress,
            config=self.config,
        )
        parts = pool.run(job, job.pending_parts(), token)

        numbers = [p.part_number for p in parts]
        if numbers != list(range(1, total_parts + 1)):
            missing = sorted(set(range(1, total_parts + 1)) - set(numbers))
            raise FatalUploadError(
                f"Expected {total_parts} parts but have {len(parts)}. "
                f"Missing parts: {missing}",
                descriptor.name,
            )

        self.coordinator.begin_finalize()
        logger.info(f"Completing multipart upload {session.session_id}")
        self.upload_api.complete_multipart(
            CompleteMultipartRequest(
                file_name=descriptor.name,
                upload_id=session.session_id,
                parts=parts,
            )
        )
        self.store.delete(key)
        self.entity_api.update_status(session.entity_id, ImageStatus.IN_PROGRESS)
        progress.complete_file(ctx.index)

    def _start_session(
        self, ctx: _FileContext, total_parts: int, key: str, service_id: str
    ) -> UploadSession:
        descriptor = ctx.descriptor
        chunk_size = self.config.chunk_size
        request = StartMultipartRequest(
            **self._start_request(descriptor).model_dump(), chunk_size=chunk_size
        )
        start = self.upload_api.start_multipart(request)
        ctx.upload_id = start.upload_id
        logger.info(
            f"Started multipart upload {start.upload_id} for {descriptor.name}: "
            f"{total_parts} parts of up to {chunk_size} bytes"
        )

        ctx.entity_id = self.entity_api.create_entity(
            self._entity_request(
                descriptor,
                item_id=start.item_id,
                upload_id=start.upload_id,
                chunk_size=chunk_size,
                chunk_amount=total_parts,
            )
        )
        session = UploadSession(
            session_id=start.upload_id,
            item_id=start.item_id,
            entity_id=ctx.entity_id,
            chunk_size=chunk_size,
            total_parts=total_parts,
        )
        self.coordinator.track(ctx.entity_id, key)
        self.store.put(
            key,
            MultipartJob(
                file_index=ctx.index,
                descriptor=descriptor,
                session=session,
                resume_key=key,
                service_id=service_id,
            ).resume_state([]),
        )
        return session

    def _abort_stale_entities(self, stored_entity_id: Optional[str]) -> None:
        """Best-effort abort of entities a fresh session supersedes."""
        stale = []
        for entity_id in (self._stale_entity_id, stored_entity_id):
            if entity_id and entity_id not in stale:
                stale.append(entity_id)
        self._stale_entity_id = None
        aborted = set()
        for entity_id in stale:
            try:
                self.entity_api.abort_entity(entity_id)
                logger.info(f"Aborted superseded entity {entity_id}")
                aborted.add(entity_id)
            except Exception as e:
                logger.warning(f"Could not abort superseded entity {entity_id}: {e}")

        # Records pointing at an aborted entity can no longer be resumed
        if aborted:
            for key, state in self.store.items():
                if state.image_id in aborted:
                    self.store.delete(key)
                    logger.info(f"Cleared resume state {key} of aborted entity")

    # Terminal handling
    def _handle_cancelled(self, ctx: _FileContext) -> UploadResult:
        descriptor = ctx.descriptor
        logger.info(f"Upload of {descriptor.name} cancelled")
        if ctx.resume_key:
            self.store.delete(ctx.resume_key)
        self.coordinator.finish(TransferState.CANCELLED)
        return UploadResult(
            file_name=descriptor.name,
            outcome=UploadOutcome.CANCELLED,
            entity_id=ctx.entity_id,
            upload_id=ctx.upload_id,
        )

    def _handle_failure(self, ctx: _FileContext, exc: Exception) -> UploadResult:
        descriptor = ctx.descriptor
        if not isinstance(exc, FatalUploadError):
            message = exc.message if isinstance(exc, GeointUploadError) else str(exc)
            exc = FatalUploadError(f"Upload failed: {message}", descriptor.name)
        logger.error(f"Upload of {descriptor.name} failed: {exc.message}")

        if ctx.entity_id:
            try:
                self.entity_api.update_status(ctx.entity_id, ImageStatus.FAILED)
            except Exception as e:
                logger.error(f"Failed to mark entity {ctx.entity_id} as failed: {e}")
            self._stale_entity_id = ctx.entity_id

        self.coordinator.finish(TransferState.FAILED)
        safe_call(
            self.listener.on_file_status,
            ctx.index,
            descriptor.name,
            FileStatus.FAILED,
            0,
        )
        self._alert("Upload failed", exc.message, descriptor.name)
        return UploadResult(
            file_name=descriptor.name,
            outcome=UploadOutcome.FAILED,
            entity_id=ctx.entity_id,
            upload_id=ctx.upload_id,
            error=exc.message,
        )

    # Payloads
    def _start_request(self, descriptor: FileDescriptor) -> StartUploadRequest:
        return StartUploadRequest(
            file_name=descriptor.name,
            file_size=descriptor.size,
            file_type=descriptor.content_type,
            imaging_date=descriptor.imaging_date_iso(),
            metadata=descriptor.metadata or "",
            image_type=int(self.config.service),
            name=descriptor.display_name,
            org_id=self.config.organization_id,
            tags=list(descriptor.tags),
            user_id=self.config.owner_id,
        )

    def _entity_request(
        self,
        descriptor: FileDescriptor,
        *,
        item_id: str,
        upload_id: str,
        chunk_size: int,
        chunk_amount: int,
    ) -> CreateEntityRequest:
        return CreateEntityRequest(
            service_id=str(int(self.config.service)),
            name=descriptor.display_name,
            photo_date=descriptor.imaging_date_iso(),
            metadata=descriptor.metadata or "",
            chunk_size=chunk_size,
            chunk_amount=chunk_amount,
            file_name=descriptor.name,
            file_size=descriptor.size,
            file_type=descriptor.content_type,
            user_id=self.config.owner_id,
            organization_id=self.config.organization_id,
            item_id=item_id,
            upload_id=upload_id,
            hashtags=list(descriptor.tags),
        )

    def _alert(self, title: str, message: str, file_name: str) -> None:
        safe_call(
            self.listener.on_alert,
            Alert(level="error", title=title, message=message, file_name=file_name),
        )

"""User-initiated cancellation of the active transfer."""

import logging
from enum import Enum
from threading import Event, Lock
from typing import Optional

from .events import UploadListener, safe_call
from .exceptions import UserCancelledError
from .models import Alert, FileStatus
from .resume_store import ResumeStateStore

logger = logging.getLogger(__name__)


class TransferState(str, Enum):
    """Lifecycle of the transfer owned by the coordinator."""

    IDLE = "idle"
    TRANSFERRING = "transferring"
    FINALIZING = "finalizing"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    FAILED = "failed"
    COMPLETED = "completed"


class CancelToken:
    """Shared by every request of one transfer; cancelling it stops them all."""

    def __init__(self) -> None:
        self._event = Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise UserCancelledError()

    def sleep(self, seconds: float) -> None:
        """Wait ``seconds``, raising UserCancelledError if cancelled meanwhile."""
        if self._event.wait(seconds):
            raise UserCancelledError()


class ActiveTransfer:
    """What the coordinator knows about the file currently being uploaded."""

    def __init__(
        self, file_index: int, file_name: str, resume_key: Optional[str] = None
    ) -> None:
        self.file_index = file_index
        self.file_name = file_name
        self.resume_key = resume_key
        self.entity_id: Optional[str] = None


class CancellationCoordinator:
    """Owns the cancellation token and the transfer state machine.

    The orchestrator calls ``begin`` for each file, ``track`` once the remote
    entity exists and ``finish`` when the file reaches a terminal state.
    ``cancel`` may be called from any thread.
    """

    def __init__(
        self,
        entity_api,
        store: ResumeStateStore,
        listener: Optional[UploadListener] = None,
    ) -> None:
        self.entity_api = entity_api
        self.store = store
        self.listener = listener or UploadListener()
        self._lock = Lock()
        self._state = TransferState.IDLE
        self._token: Optional[CancelToken] = None
        self._active: Optional[ActiveTransfer] = None

    @property
    def state(self) -> TransferState:
        return self._state

    @property
    def active(self) -> Optional[ActiveTransfer]:
        return self._active

    def reset(self) -> None:
        """Clear the cancelled marker before a new batch starts."""
        with self._lock:
            self._state = TransferState.IDLE
            self._token = None
            self._active = None

    def begin(
        self, file_index: int, file_name: str, resume_key: Optional[str] = None
    ) -> CancelToken:
        """Start tracking a file and hand out a fresh token for it."""
        with self._lock:
            if self._state in (TransferState.CANCELLING, TransferState.CANCELLED):
                raise UserCancelledError()
            self._token = CancelToken()
            self._active = ActiveTransfer(file_index, file_name, resume_key)
            self._state = TransferState.TRANSFERRING
            return self._token

    def track(self, entity_id: str, resume_key: Optional[str] = None) -> None:
        """Record the remote entity of the active transfer.

        If the user cancelled while the entity was being created, the entity
        is aborted right away and the cancellation is raised.
        """
        with self._lock:
            active = self._active
            if active is not None:
                active.entity_id = entity_id
                if resume_key is not None:
                    active.resume_key = resume_key
            cancelled = self._state in (
                TransferState.CANCELLING,
                TransferState.CANCELLED,
            )
        if cancelled:
            self._abort_remote(entity_id)
            raise UserCancelledError()

    def is_user_cancelled(self) -> bool:
        return self._state in (TransferState.CANCELLING, TransferState.CANCELLED)

    def begin_finalize(self) -> None:
        """Enter finalization. From here on ``cancel`` is refused.

        Raises UserCancelledError if a cancellation got in first.
        """
        with self._lock:
            if self._state != TransferState.TRANSFERRING:
                raise UserCancelledError()
            self._state = TransferState.FINALIZING

    def finish(self, state: TransferState) -> None:
        """Move the active transfer to a terminal state."""
        with self._lock:
            if self._state in (TransferState.TRANSFERRING, TransferState.FINALIZING):
                self._state = state
                self._token = None
                self._active = None

    def cancel(self) -> bool:
        """Cancel the active transfer. Returns False when nothing is running."""
        with self._lock:
            if self._state != TransferState.TRANSFERRING:
                logger.debug(f"Cancel ignored in state {self._state.value}")
                return False
            self._state = TransferState.CANCELLING
            token = self._token
            active = self._active
            entity_id = active.entity_id if active else None

        logger.info("Cancelling active upload")
        if token is not None:
            token.cancel()

        if entity_id:
            self._abort_remote(entity_id)

        file_name = active.file_name if active else None
        safe_call(
            self.listener.on_alert,
            Alert(level="warning", title="Upload cancelled", file_name=file_name),
        )
        if active is not None:
            safe_call(
                self.listener.on_file_status,
                active.file_index,
                active.file_name,
                FileStatus.IDLE,
                0,
            )
            if active.resume_key:
                self.store.delete(active.resume_key)

        with self._lock:
            self._state = TransferState.CANCELLED
            self._token = None
            self._active = None
        return True

    def _abort_remote(self, entity_id: str) -> None:
        try:
            self.entity_api.abort_entity(entity_id)
            logger.info(f"Marked entity {entity_id} as aborted")
        except Exception as e:
            logger.error(f"Failed to abort entity {entity_id} on server: {e}")
            safe_call(
                self.listener.on_alert,
                Alert(
                    level="error",
                    title="Failed to abort upload on server",
                    message=str(e),
                ),
            )

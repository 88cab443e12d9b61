"""Aggregation of per-part byte counters into file and batch percentages."""

from threading import Lock
from typing import Dict, Optional

from .events import UploadListener, safe_call
from .models import ProgressEvent

# Highest percentage shown before the server acknowledged the file.
IN_FLIGHT_CEILING = 99


class _FileProgress:
    def __init__(self, name: str, size: int) -> None:
        self.name = name
        self.size = size
        self.bytes_by_part: Dict[int, int] = {}
        self.last_file_percent = 0
        self.last_batch_percent = 0

    def fraction(self) -> float:
        if self.size <= 0:
            return 0.0
        return min(1.0, sum(self.bytes_by_part.values()) / self.size)


class ProgressAggregator:
    """Folds part byte counts into percentages for one batch of files.

    Each part reports its absolute byte count, not a delta, so reports may
    arrive out of order from several workers. Percentages stay at or below
    99 until ``complete_file`` is called after the server acknowledged the
    file.
    """

    def __init__(
        self,
        total_files: int,
        listener: Optional[UploadListener] = None,
        monotonic: bool = False,
    ) -> None:
        self.total_files = max(1, total_files)
        self.listener = listener or UploadListener()
        self.monotonic = monotonic
        self._files: Dict[int, _FileProgress] = {}
        self._lock = Lock()

    def start_file(
        self,
        file_index: int,
        file_name: str,
        file_size: int,
        committed: Optional[Dict[int, int]] = None,
    ) -> None:
        """Begin tracking a file, seeding parts that are already committed."""
        with self._lock:
            state = _FileProgress(file_name, file_size)
            state.bytes_by_part.update(committed or {})
            self._files[file_index] = state
            event = self._event(file_index, state)
        safe_call(self.listener.on_progress, event)

    def report_part_bytes(
        self, file_index: int, part_number: int, bytes_so_far: int
    ) -> Optional[ProgressEvent]:
        with self._lock:
            state = self._files.get(file_index)
            if state is None:
                return None
            state.bytes_by_part[part_number] = bytes_so_far
            event = self._event(file_index, state)
        safe_call(self.listener.on_progress, event)
        return event

    def reset_part(self, file_index: int, part_number: int) -> None:
        """Forget a part's bytes before it is retried."""
        self.report_part_bytes(file_index, part_number, 0)

    def complete_file(self, file_index: int) -> ProgressEvent:
        """Report the file as fully acknowledged (100%) and stop tracking it."""
        with self._lock:
            state = self._files.pop(file_index, None)
            name = state.name if state else ""
            batch = round(100 * (file_index + 1) / self.total_files)
            event = ProgressEvent(
                file_index=file_index,
                file_name=name,
                file_percent=100,
                batch_percent=min(100, batch),
            )
        safe_call(self.listener.on_progress, event)
        return event

    def discard_file(self, file_index: int) -> None:
        """Drop a file's counters after a failure or cancellation."""
        with self._lock:
            self._files.pop(file_index, None)

    def file_fraction(self, file_index: int) -> float:
        with self._lock:
            state = self._files.get(file_index)
            return state.fraction() if state else 0.0

    def _event(self, file_index: int, state: _FileProgress) -> ProgressEvent:
        fraction = state.fraction()
        file_percent = min(IN_FLIGHT_CEILING, round(100 * fraction))
        batch_percent = min(
            IN_FLIGHT_CEILING,
            round(100 * (file_index + fraction) / self.total_files),
        )
        if self.monotonic:
            file_percent = max(file_percent, state.last_file_percent)
            batch_percent = max(batch_percent, state.last_batch_percent)
        state.last_file_percent = file_percent
        state.last_batch_percent = batch_percent
        return ProgressEvent(
            file_index=file_index,
            file_name=state.name,
            file_percent=file_percent,
            batch_percent=batch_percent,
        )

"""Durable store of multipart resume state, keyed by file identity."""

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock
from typing import List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from .models import FileDescriptor, ResumeState

logger = logging.getLogger(__name__)

KEY_PREFIX = "upload_resume_"


def resume_key(owner_id: str, descriptor: FileDescriptor) -> str:
    """Stable key of a file for one owner.

    Derived only from (owner, name, size, last-modified) so the same physical
    file maps to the same key after a restart.
    """
    return (
        f"{KEY_PREFIX}{owner_id}_{descriptor.name}_"
        f"{descriptor.size}_{descriptor.last_modified}"
    )


class ResumeStateStore:
    """Directory of JSON resume records, one file per key.

    Writes are atomic (temp file + rename) and ``put`` is a read-modify-write
    so concurrent part commits never drop each other's parts. The directory
    is created on first write.
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory).expanduser()
        self._lock = Lock()

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.directory / f"{KEY_PREFIX}{digest}.json"

    def _load(self, path: Path) -> Optional[Tuple[str, ResumeState]]:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            state = ResumeState.model_validate(raw)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, PydanticValidationError) as e:
            logger.warning(f"Ignoring unreadable resume state {path.name}: {e}")
            return None
        key = raw.get("key", path.stem) if isinstance(raw, dict) else path.stem
        return key, state

    def _write(self, path: Path, key: str, state: ResumeState) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        payload = state.model_dump(mode="json", by_alias=True)
        payload["key"] = key
        fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Optional[ResumeState]:
        """Stored state for ``key``, or None when absent or unreadable."""
        with self._lock:
            loaded = self._load(self._path(key))
        return loaded[1] if loaded else None

    def put(self, key: str, state: ResumeState) -> ResumeState:
        """Merge ``state`` into the stored record and return what was written.

        When the stored record belongs to the same upload id its committed
        parts are kept and ``state``'s parts are added, de-duplicated by part
        number. A record for a different upload id is replaced.
        """
        with self._lock:
            path = self._path(key)
            loaded = self._load(path)
            if loaded is not None and loaded[1].upload_id == state.upload_id:
                merged = loaded[1].merged_with(state.completed_parts)
            else:
                merged = state
            self._write(path, key, merged)
        return merged

    def delete(self, key: str) -> None:
        with self._lock:
            try:
                self._path(key).unlink()
                logger.debug(f"Cleared resume state {key}")
            except FileNotFoundError:
                pass

    def delete_all(self) -> int:
        """Remove every stored record. Returns how many were removed."""
        removed = 0
        with self._lock:
            if not self.directory.exists():
                return 0
            for path in self.directory.glob(f"{KEY_PREFIX}*.json"):
                try:
                    path.unlink()
                    removed += 1
                except FileNotFoundError:
                    pass
        if removed:
            logger.info(f"Cleared {removed} resume state(s)")
        return removed

    def items(self) -> List[Tuple[str, ResumeState]]:
        """All readable records as (key, state) pairs."""
        with self._lock:
            if not self.directory.exists():
                return []
            records = []
            for path in sorted(self.directory.glob(f"{KEY_PREFIX}*.json")):
                loaded = self._load(path)
                if loaded is not None:
                    records.append(loaded)
        return records

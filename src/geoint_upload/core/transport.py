"""HTTP transfer of byte ranges to presigned storage URLs."""

import logging
from typing import Callable, Optional

import requests

from .cancellation import CancelToken
from .exceptions import NetworkError

logger = logging.getLogger(__name__)

BLOCK_SIZE = 64 * 1024


class _ProgressReader:
    """File-like view of a byte buffer for ``requests``.

    Reports the absolute number of bytes handed to the connection after every
    read and stops the transfer as soon as the token is cancelled.
    """

    def __init__(
        self,
        data: bytes,
        token: CancelToken,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._data = memoryview(data)
        self._token = token
        self._on_progress = on_progress
        self._pos = 0

    def __len__(self) -> int:
        return len(self._data)

    def read(self, size: int = -1) -> bytes:
        self._token.raise_if_cancelled()
        if size is None or size < 0:
            size = len(self._data) - self._pos
        chunk = self._data[self._pos : self._pos + min(size, BLOCK_SIZE)].tobytes()
        self._pos += len(chunk)
        if chunk and self._on_progress:
            self._on_progress(self._pos)
        return chunk


class PartTransport:
    """Sends byte ranges with PUT and returns the storage entity tag."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        connect_timeout: float = 30,
        read_timeout: float = 600,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = (connect_timeout, read_timeout)

    def put(
        self,
        url: str,
        data: bytes,
        *,
        token: CancelToken,
        on_progress: Optional[Callable[[int], None]] = None,
        content_type: str = "application/octet-stream",
    ) -> str:
        """PUT ``data`` to ``url``.

        Returns the ETag response header, or an empty string when storage did
        not send one.
        """
        token.raise_if_cancelled()
        reader = _ProgressReader(data, token, on_progress)
        try:
            response = self.session.put(
                url,
                data=reader,
                headers={
                    "Content-Type": content_type,
                    "Content-Length": str(len(data)),
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            status_code = None
            if getattr(e, "response", None) is not None:
                status_code = e.response.status_code
                logger.debug(f"Storage response: {e.response.text[:500]}")
            token.raise_if_cancelled()
            raise NetworkError(f"Transfer failed: {e}", status_code) from e

        return response.headers.get("ETag", "")

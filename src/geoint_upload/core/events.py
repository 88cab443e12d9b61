"""Callbacks through which the engine reports to the user interface."""

import logging

from .models import Alert, FileStatus, ProgressEvent

logger = logging.getLogger(__name__)


class UploadListener:
    """Receives progress, per-file status changes and alerts.

    The default implementation ignores everything; subclasses override what
    they display. Callbacks may be invoked from worker threads.
    """

    def on_progress(self, event: ProgressEvent) -> None:
        pass

    def on_file_status(
        self, file_index: int, file_name: str, status: FileStatus, progress: int
    ) -> None:
        pass

    def on_alert(self, alert: Alert) -> None:
        pass


class LoggingListener(UploadListener):
    """Listener that writes status changes and alerts to the log."""

    def on_file_status(
        self, file_index: int, file_name: str, status: FileStatus, progress: int
    ) -> None:
        logger.info(f"File {file_index + 1} ({file_name}): {status.value} {progress}%")

    def on_alert(self, alert: Alert) -> None:
        text = alert.title if not alert.message else f"{alert.title}: {alert.message}"
        if alert.level == "error":
            logger.error(text)
        elif alert.level == "warning":
            logger.warning(text)
        else:
            logger.info(text)


def safe_call(callback, *args) -> None:
    """Invoke a listener callback, logging instead of propagating its errors."""
    try:
        callback(*args)
    except Exception as e:
        logger.warning(f"Listener callback error: {e}")

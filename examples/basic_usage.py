#!/usr/bin/env python3
"""
Basic usage examples for GeoINT Upload.

This script demonstrates the most common operations:
- Uploading files with metadata
- Listening to progress
- Resuming an interrupted upload
- Error handling
"""

import logging
import sys

from geoint_upload import (
    ConfigurationError,
    GeointUploadAPI,
    UploaderConfig,
    UploadListener,
)


class PrintListener(UploadListener):
    """Prints the batch percentage whenever it changes."""

    def __init__(self):
        self.last = -1

    def on_progress(self, event):
        if event.batch_percent != self.last:
            self.last = event.batch_percent
            print(f"   {event.file_name}: {event.file_percent}% (batch {event.batch_percent}%)")

    def on_alert(self, alert):
        print(f"   ! {alert.title}: {alert.message or ''}")


def main():
    """Upload the files given on the command line."""
    logging.basicConfig(level=logging.WARNING)
    paths = sys.argv[1:]
    if not paths:
        print("Usage: basic_usage.py FILE [FILE ...]")
        return

    # Requires GEOINT_API_URL and GEOINT_UPLOAD_API_URL (and usually GEOINT_API_KEY)
    try:
        api = GeointUploadAPI(
            config=UploaderConfig.from_env(service="optical"),
            listener=PrintListener(),
        )
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return

    # 1. Interrupted uploads from earlier runs are resumed automatically
    pending = api.pending_resumes()
    if pending:
        print(f"\n1. {len(pending)} interrupted upload(s) will be resumed")

    # 2. Upload
    print("\n2. Uploading...")
    results = api.upload_paths(
        paths,
        tags="demo,example",
        metadata='{"source": "basic_usage.py"}',
    )

    # 3. Results
    print("\n3. Results:")
    for result in results:
        line = f"   {result.file_name}: {result.outcome.value}"
        if result.entity_id:
            line += f" (image {result.entity_id})"
        if result.error:
            line += f" - {result.error}"
        print(line)


if __name__ == "__main__":
    main()

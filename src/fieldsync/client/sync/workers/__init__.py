"""Workers for concurrent transfer operations.

This package provides:
- BoundedWorkerPool: Runs per-item work with a hard concurrency bound
- UploadWorker: Uploads one queue item with retries and records the outcome
- FileUploader: Single-request or chunked upload of one file

Usage:
    from fieldsync.client.sync.workers import BoundedWorkerPool, UploadWorker

    pool = BoundedWorkerPool(max_workers=4, name="upload")
    outcomes = pool.run(items, lambda item: worker.process(item, drive_id, cancel))
"""

from fieldsync.client.sync.workers.pool import BoundedWorkerPool
from fieldsync.client.sync.workers.transfers import FileUploader, join_remote
from fieldsync.client.sync.workers.upload_worker import UploadWorker

__all__ = [
    "BoundedWorkerPool",
    "FileUploader",
    "UploadWorker",
    "join_remote",
]

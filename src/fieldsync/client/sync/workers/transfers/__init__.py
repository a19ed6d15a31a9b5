from fieldsync.client.sync.workers.transfers.file_uploader import (
    DEFAULT_SMALL_UPLOAD_THRESHOLD,
    FileUploader,
    join_remote,
)

__all__ = [
    "DEFAULT_SMALL_UPLOAD_THRESHOLD",
    "FileUploader",
    "join_remote",
]

"""Chunked draft uploads over the realtime session."""

from thread_sync.upload.client import raw_chunk_size, upload_draft_file
from thread_sync.upload.progress import ProgressThrottle, UploadProgress

__all__ = ["raw_chunk_size", "upload_draft_file", "ProgressThrottle", "UploadProgress"]

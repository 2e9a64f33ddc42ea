"""Client-side upload engine."""
from portal_uploads.client.chunking import ChunkSpan, chunk_count, create_chunk_spans, create_chunks
from portal_uploads.client.policy import UploadPolicy, UploadTier, detect_tier
from portal_uploads.client.transfer import (
    CallbackListener,
    CancelToken,
    ChunkUploadError,
    ClientInfo,
    ProgressEvent,
    ProgressListener,
    SourceReadError,
    TransferPolicy,
    UploadCancelledError,
    UploadError,
    UploadResult,
    UploadSessionError,
    UploadSource,
)
from portal_uploads.client.uploader import ChunkedUploader

__all__ = [
    "ChunkSpan", "chunk_count", "create_chunk_spans", "create_chunks",
    "UploadPolicy", "UploadTier", "detect_tier",
    "CallbackListener", "CancelToken", "ChunkUploadError", "ClientInfo", "ProgressEvent",
    "ProgressListener", "SourceReadError", "TransferPolicy", "UploadCancelledError", "UploadError", "UploadResult",
    "UploadSessionError", "UploadSource", "ChunkedUploader",
]

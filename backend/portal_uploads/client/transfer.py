"""Types shared by the upload engine: retry policy, errors, progress, cancellation, sources."""
import asyncio
import mimetypes
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiofiles


@dataclass(frozen=True)
class TransferPolicy:
    """The one retry/parallelism knob set for chunk and single-request transfers."""
    max_parallel: int = 1
    max_retries: int = 2
    base_backoff: float = 1.0
    chunk_timeout: float = 30.0

    def backoff_delay(self, retry: int) -> float:
        """Delay before retry number ``retry`` (1-based)."""
        return self.base_backoff * 2 ** (retry - 1)

    @classmethod
    def from_settings(cls, settings=None) -> "TransferPolicy":
        if settings is None:
            from portal_uploads.config import settings
        return cls(
            max_parallel=settings.UPLOAD_MAX_PARALLEL,
            max_retries=settings.UPLOAD_MAX_RETRIES,
            base_backoff=settings.UPLOAD_BASE_BACKOFF,
            chunk_timeout=settings.UPLOAD_CHUNK_TIMEOUT,
        )


# ── Errors ───────────────────────────────────────────────────────

class UploadError(Exception):
    """Base upload failure. ``retryable`` says whether trying again later may help."""

    def __init__(self, message: str, retryable: bool = True, status: Optional[int] = None):
        self.message = message
        self.retryable = retryable
        self.status = status
        super().__init__(message)


class ChunkUploadError(UploadError):
    """One or more chunks failed terminally."""

    def __init__(self, message: str, chunk_indices: tuple[int, ...] = (), retryable: bool = True,
                 status: Optional[int] = None):
        self.chunk_indices = chunk_indices
        super().__init__(message, retryable, status)


class UploadSessionError(UploadError):
    """Init or complete of a chunked session failed. ``stage`` is "init" or "complete"."""

    def __init__(self, message: str, stage: str, retryable: bool = True, status: Optional[int] = None):
        self.stage = stage
        super().__init__(message, retryable, status)


class SourceReadError(UploadError):
    """The file being uploaded could not be read. Not retryable."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class UploadCancelledError(UploadError):
    def __init__(self, message: str = "Upload cancelled"):
        super().__init__(message, retryable=False)


def is_retryable_status(status: int) -> bool:
    """5xx and 413 are worth retrying; other 4xx are the caller's fault."""
    return status >= 500 or status == 413


# ── Results and progress ─────────────────────────────────────────

@dataclass
class ChunkOutcome:
    index: int
    success: bool
    size: int = 0
    error: Optional[str] = None


@dataclass
class UploadResult:
    success: bool
    file_id: Optional[str] = None
    web_view_link: Optional[str] = None
    upload_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    used_chunked: bool = False
    fell_back: bool = False
    user_message: Optional[str] = None


@dataclass(frozen=True)
class ProgressEvent:
    chunk_index: int
    total_chunks: int
    uploaded_bytes: int
    total_bytes: int
    percent: int


def make_progress(chunk_index: int, total_chunks: int, uploaded: int, total: int) -> ProgressEvent:
    percent = 100 if total == 0 else round(uploaded / total * 100)
    return ProgressEvent(chunk_index, total_chunks, uploaded, total, percent)


class ProgressListener:
    """Observer for one upload.

    on_progress is called after every acknowledged chunk (twice for a
    single-request upload: at 0 and at the total); uploaded_bytes never
    decreases within one transfer attempt. on_complete is called exactly
    once with the final result.
    """

    def on_progress(self, event: ProgressEvent) -> None:
        pass

    def on_complete(self, result: UploadResult) -> None:
        pass


class CallbackListener(ProgressListener):
    """Adapts plain functions to the listener interface."""

    def __init__(
        self,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
        on_complete: Optional[Callable[[UploadResult], None]] = None,
    ):
        self._on_progress = on_progress
        self._on_complete = on_complete

    def on_progress(self, event: ProgressEvent) -> None:
        if self._on_progress:
            self._on_progress(event)

    def on_complete(self, result: UploadResult) -> None:
        if self._on_complete:
            self._on_complete(result)


class CancelToken:
    """Cooperative cancellation for one upload."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise UploadCancelledError()

    async def sleep(self, delay: float) -> None:
        """Sleep ``delay`` seconds, waking early and raising if cancelled."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise UploadCancelledError()


# ── Sources ──────────────────────────────────────────────────────

@dataclass
class ClientInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    message: Optional[str] = None

    def as_fields(self) -> dict[str, str]:
        fields = {"clientName": self.name, "clientEmail": self.email, "clientMessage": self.message}
        return {k: v for k, v in fields.items() if v is not None}


@dataclass
class UploadSource:
    """Bytes to upload, held in memory or read lazily from a file."""
    name: str
    size: int
    mime_type: str = "application/octet-stream"
    data: Optional[bytes] = field(default=None, repr=False)
    path: Optional[Path] = None

    @classmethod
    def from_bytes(cls, data: bytes, name: str, mime_type: Optional[str] = None) -> "UploadSource":
        return cls(name=name, size=len(data), mime_type=mime_type or _guess_mime(name), data=data)

    @classmethod
    def from_path(cls, path: str | Path, mime_type: Optional[str] = None) -> "UploadSource":
        path = Path(path)
        return cls(
            name=path.name,
            size=os.path.getsize(path),
            mime_type=mime_type or _guess_mime(path.name),
            path=path,
        )

    async def read_range(self, start: int, end: int) -> bytes:
        if self.data is not None:
            return self.data[start:end]
        try:
            async with aiofiles.open(self.path, "rb") as f:
                await f.seek(start)
                return await f.read(end - start)
        except OSError as e:
            raise SourceReadError(f"Failed to read {self.name}: {e}") from e

    async def read_all(self) -> bytes:
        return await self.read_range(0, self.size)


def _guess_mime(name: str) -> str:
    return mimetypes.guess_type(name)[0] or "application/octet-stream"


Compressor = Callable[[UploadSource], Awaitable[UploadSource]]

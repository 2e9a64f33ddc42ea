"""Async chunked upload engine.

Drives one file through the server's upload API:

    single request   POST /api/upload                 (small files)
    chunked          POST /api/upload/chunked/init
                     POST /api/upload/chunked/chunk   x N, in batches
                     POST /api/upload/chunked/complete

A failed chunked upload of a small file is retried once through the single
request path before giving up.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Optional

import aiohttp

from portal_uploads.client.chunking import ChunkSpan, create_chunk_spans
from portal_uploads.client.policy import UploadPolicy, friendly_error_message
from portal_uploads.client.transfer import (
    CancelToken,
    ChunkOutcome,
    ChunkUploadError,
    ClientInfo,
    Compressor,
    ProgressListener,
    SourceReadError,
    TransferPolicy,
    UploadCancelledError,
    UploadError,
    UploadResult,
    UploadSessionError,
    UploadSource,
    is_retryable_status,
    make_progress,
)

logger = logging.getLogger(__name__)


class ChunkedUploader:
    """Upload client for one server.

    Use as an async context manager to share one connection pool across
    uploads; without ``async with`` each upload opens its own session.
    An injected ``session`` is never closed by the uploader.
    """

    def __init__(
        self,
        base_url: str,
        policy: Optional[UploadPolicy] = None,
        transfer: Optional[TransferPolicy] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.policy = policy or UploadPolicy.for_environment(base_url)
        self.transfer = transfer or TransferPolicy.from_settings()
        self._session = session
        self._owns_session = False

    async def open(self) -> None:
        """Open a persistent session for connection pooling."""
        if not self._session:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        """Close the persistent session if this uploader created it."""
        if self._session and self._owns_session:
            await self._session.close()
        if self._owns_session:
            self._session = None
            self._owns_session = False

    async def __aenter__(self) -> "ChunkedUploader":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _failure(self, error: str, retryable: bool, size: int) -> UploadResult:
        return UploadResult(
            success=False,
            error=error,
            retryable=retryable,
            user_message=friendly_error_message(error, size, self.policy),
        )

    # ── Public entry point ───────────────────────────────────────

    async def upload_file(
        self,
        portal_id: str,
        source: UploadSource,
        client_info: Optional[ClientInfo] = None,
        access_token: Optional[str] = None,
        listener: Optional[ProgressListener] = None,
        enable_compression: bool = True,
        compressor: Optional[Compressor] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> UploadResult:
        """Upload ``source`` to ``portal_id``. Never raises for upload failures."""
        if self._session is None:
            async with self:
                return await self.upload_file(
                    portal_id, source, client_info, access_token, listener,
                    enable_compression, compressor, cancel_token,
                )

        listener = listener or ProgressListener()
        cancel_token = cancel_token or CancelToken()
        client_info = client_info or ClientInfo()

        try:
            result = await self._upload(
                portal_id, source, client_info, access_token, listener,
                enable_compression, compressor, cancel_token,
            )
        except UploadError as e:
            logger.error("Upload of %s failed: %s", source.name, e)
            result = self._failure(str(e), e.retryable, source.size)
        except Exception as e:
            logger.exception("Unexpected error uploading %s", source.name)
            result = self._failure(f"Unexpected upload error: {e}", False, source.size)
        listener.on_complete(result)
        return result

    async def _upload(
        self,
        portal_id: str,
        source: UploadSource,
        client_info: ClientInfo,
        access_token: Optional[str],
        listener: ProgressListener,
        enable_compression: bool,
        compressor: Optional[Compressor],
        cancel_token: CancelToken,
    ) -> UploadResult:
        if enable_compression and compressor is not None:
            source = await compressor(source)

        size = source.size
        logger.info("Upload diagnostics for %s: %s", source.name, self.policy.describe(size))
        cancel_token.raise_if_cancelled()

        if self.policy.use_single_request(size):
            logger.info("Using single upload for %s (%d bytes)", source.name, size)
            return await self._upload_single(portal_id, source, client_info, access_token, listener, cancel_token)

        logger.info(
            "Using chunked upload for %s (%d chunks of %d bytes)",
            source.name, self.policy.chunk_count(size), self.policy.chunk_size,
        )
        try:
            return await self._upload_chunked(portal_id, source, client_info, access_token, listener, cancel_token)
        except (UploadCancelledError, SourceReadError):
            raise
        except UploadError as e:
            permanent_init = isinstance(e, UploadSessionError) and e.stage == "init" and not e.retryable
            if permanent_init or not self.policy.fallback_eligible(size):
                raise
            logger.warning("Chunked upload failed for %s, falling back to single upload: %s", source.name, e)
            result = await self._upload_single(
                portal_id, source, client_info, access_token, listener, cancel_token,
            )
            result.fell_back = True
            return result

    # ── HTTP ─────────────────────────────────────────────────────

    def _headers(self, access_token: Optional[str]) -> dict:
        return {"Authorization": f"Bearer {access_token}"} if access_token else {}

    async def _post(
        self,
        path: str,
        *,
        timeout: float,
        access_token: Optional[str],
        json: Optional[dict] = None,
        data: Any = None,
    ) -> dict:
        """One POST. Returns the JSON body on 2xx, raises UploadError otherwise."""
        url = f"{self.base_url}{path}"
        try:
            async with self._session.post(
                url,
                json=json,
                data=data,
                headers=self._headers(access_token),
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                if not isinstance(body, dict):
                    body = {}
                if 200 <= resp.status < 300:
                    return body
                message = body.get("error") or f"HTTP {resp.status}: {resp.reason}"
                raise UploadError(message, retryable=is_retryable_status(resp.status), status=resp.status)
        except asyncio.TimeoutError:
            raise UploadError(f"Request timeout after {timeout} seconds", retryable=True)
        except aiohttp.ClientError as e:
            raise UploadError(f"Network error: {e}", retryable=True)

    async def _post_with_retry(
        self,
        path: str,
        build_form: Callable[[], aiohttp.FormData],
        *,
        timeout: float,
        access_token: Optional[str],
        cancel_token: CancelToken,
        label: str,
        error_cls: type = UploadError,
        **error_kwargs,
    ) -> dict:
        """POST a multipart body with the transfer policy's retry/backoff.

        Network errors, timeouts, 5xx and 413 are retried; other 4xx fail at once.
        """
        max_attempts = self.transfer.max_retries + 1
        start = time.monotonic()
        attempt = 0
        while True:
            cancel_token.raise_if_cancelled()
            attempt += 1
            try:
                return await self._post(path, data=build_form(), timeout=timeout, access_token=access_token)
            except UploadError as e:
                if not e.retryable or attempt >= max_attempts:
                    elapsed = time.monotonic() - start
                    raise error_cls(
                        f"{label} failed after {attempt} attempts in {elapsed:.1f}s: {e.message}",
                        retryable=e.retryable,
                        status=e.status,
                        **error_kwargs,
                    )
                delay = self.transfer.backoff_delay(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    label, attempt, max_attempts, delay, e,
                )
                await cancel_token.sleep(delay)

    # ── Single request ───────────────────────────────────────────

    async def _upload_single(
        self,
        portal_id: str,
        source: UploadSource,
        client_info: ClientInfo,
        access_token: Optional[str],
        listener: ProgressListener,
        cancel_token: CancelToken,
    ) -> UploadResult:
        data = await source.read_all()
        size = len(data)

        def build_form() -> aiohttp.FormData:
            form = aiohttp.FormData()
            form.add_field("file", data, filename=source.name, content_type=source.mime_type)
            form.add_field("portalId", portal_id)
            for key, value in client_info.as_fields().items():
                form.add_field(key, value)
            if access_token:
                form.add_field("token", access_token)
            return form

        listener.on_progress(make_progress(0, 1, 0, size))
        body = await self._post_with_retry(
            "/api/upload",
            build_form,
            timeout=self.policy.file_timeout,
            access_token=access_token,
            cancel_token=cancel_token,
            label="Upload",
        )
        listener.on_progress(make_progress(0, 1, size, size))
        return UploadResult(
            success=True,
            file_id=body.get("fileId"),
            web_view_link=body.get("webViewLink"),
            upload_id=body.get("uploadId"),
            used_chunked=False,
        )

    # ── Chunked ──────────────────────────────────────────────────

    async def _session_call(
        self, stage: str, path: str, payload: dict, timeout: float, access_token: Optional[str],
    ) -> dict:
        try:
            return await self._post(path, json=payload, timeout=timeout, access_token=access_token)
        except UploadError as e:
            raise UploadSessionError(
                f"Failed to {'initialize' if stage == 'init' else 'complete'} upload: {e.message}",
                stage=stage,
                retryable=e.retryable,
                status=e.status,
            )

    async def _upload_chunked(
        self,
        portal_id: str,
        source: UploadSource,
        client_info: ClientInfo,
        access_token: Optional[str],
        listener: ProgressListener,
        cancel_token: CancelToken,
    ) -> UploadResult:
        size = source.size
        spans = create_chunk_spans(size, self.policy.chunk_size)
        total_chunks = len(spans)

        init = await self._session_call(
            "init",
            "/api/upload/chunked/init",
            {
                "portalId": portal_id,
                "fileName": source.name,
                "fileSize": size,
                "mimeType": source.mime_type,
                "totalChunks": total_chunks,
                **client_info.as_fields(),
                "token": access_token,
            },
            self.transfer.chunk_timeout,
            access_token,
        )
        upload_id = init.get("uploadId")
        if not upload_id:
            raise UploadSessionError("Invalid response from server: missing uploadId", stage="init")

        uploaded = 0

        async def send(span: ChunkSpan) -> ChunkOutcome:
            nonlocal uploaded
            outcome = await self._send_chunk(upload_id, span, total_chunks, source, access_token, cancel_token)
            uploaded += outcome.size
            listener.on_progress(make_progress(span.index, total_chunks, uploaded, size))
            return outcome

        step = max(1, self.transfer.max_parallel)
        for batch_start in range(0, total_chunks, step):
            cancel_token.raise_if_cancelled()
            batch = spans[batch_start:batch_start + step]
            if step == 1:
                outcomes = [await send(batch[0])]
            else:
                outcomes = await asyncio.gather(*(send(span) for span in batch), return_exceptions=True)
            self._raise_batch_failures(outcomes)

        complete = await self._session_call(
            "complete",
            "/api/upload/chunked/complete",
            {
                "uploadId": upload_id,
                "portalId": portal_id,
                "fileName": source.name,
                "fileSize": size,
                "mimeType": source.mime_type,
                "token": access_token,
            },
            self.policy.file_timeout,
            access_token,
        )
        return UploadResult(
            success=True,
            file_id=complete.get("fileId"),
            web_view_link=complete.get("webViewLink"),
            upload_id=upload_id,
            used_chunked=True,
        )

    @staticmethod
    def _raise_batch_failures(outcomes: list) -> None:
        """Abort the upload if any chunk of the batch failed; report every failure."""
        failures = [o for o in outcomes if isinstance(o, BaseException)]
        if not failures:
            return
        for failure in failures:
            if isinstance(failure, UploadCancelledError):
                raise failure
        for failure in failures:
            if not isinstance(failure, UploadError):
                raise failure
        if len(failures) == 1:
            raise failures[0]
        indices = tuple(i for f in failures for i in getattr(f, "chunk_indices", ()))
        raise ChunkUploadError(
            "; ".join(str(f) for f in failures),
            chunk_indices=indices,
            retryable=all(f.retryable for f in failures),
        )

    async def _send_chunk(
        self,
        upload_id: str,
        span: ChunkSpan,
        total_chunks: int,
        source: UploadSource,
        access_token: Optional[str],
        cancel_token: CancelToken,
    ) -> ChunkOutcome:
        data = await source.read_range(span.start, span.end)

        def build_form() -> aiohttp.FormData:
            form = aiohttp.FormData()
            form.add_field("uploadId", upload_id)
            form.add_field("chunkIndex", str(span.index))
            form.add_field("totalChunks", str(total_chunks))
            form.add_field(
                "chunk", data,
                filename=f"{source.name}.part{span.index}",
                content_type="application/octet-stream",
            )
            return form

        await self._post_with_retry(
            "/api/upload/chunked/chunk",
            build_form,
            timeout=self.transfer.chunk_timeout,
            access_token=access_token,
            cancel_token=cancel_token,
            label=f"Chunk {span.index}",
            error_cls=ChunkUploadError,
            chunk_indices=(span.index,),
        )
        return ChunkOutcome(span.index, True, len(data))

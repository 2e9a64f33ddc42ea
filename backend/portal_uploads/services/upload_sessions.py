"""Server side of chunked and single-request uploads.

Sessions and received chunk indices live in the database; chunk bytes live
in FileStorageService until completion assembles them into one file.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from portal_uploads.config import settings
from portal_uploads.models.file_record import FileRecord
from portal_uploads.models.portal import Portal
from portal_uploads.models.storage_account import StorageAccount
from portal_uploads.models.upload_session import UploadSession, UploadedChunk
from portal_uploads.schemas.upload import ChunkedCompleteRequest, ChunkedInitRequest
from portal_uploads.services.file_storage import file_storage
from portal_uploads.services.provisioning.account_states import can_create_uploads

logger = logging.getLogger(__name__)


class UploadRequestError(Exception):
    """A rejected upload request; ``status_code`` is the HTTP status to answer with."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def mime_allowed(mime_type: str, allowed: list[str]) -> bool:
    """Empty allow-list admits everything; ``type/*`` admits the whole family."""
    if not allowed:
        return True
    mime_type = (mime_type or "").lower()
    for pattern in allowed:
        pattern = pattern.lower()
        if pattern.endswith("/*"):
            if mime_type.startswith(pattern[:-1]):
                return True
        elif mime_type == pattern:
            return True
    return False


def file_link(file_id: str) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/api/files/{file_id}/download"


async def _check_storage_accounts(db: AsyncSession, portal: Portal) -> None:
    """Reject uploads when the owner's accounts for the portal's provider all exist but none is usable.

    Portals whose owner has no account for the provider store files locally.
    """
    result = await db.execute(
        select(StorageAccount.status).where(
            StorageAccount.user_id == portal.user_id,
            StorageAccount.provider == portal.storage_provider,
        )
    )
    statuses = result.scalars().all()
    if statuses and not any(can_create_uploads(s) for s in statuses):
        raise UploadRequestError(400, f"No active {portal.storage_provider} storage account available")


async def validate_portal_upload(
    db: AsyncSession,
    portal_id: str,
    file_size: int,
    mime_type: str,
    client_name: Optional[str],
    client_email: Optional[str],
) -> Portal:
    portal = await db.get(Portal, portal_id)
    if portal is None:
        raise UploadRequestError(404, "Portal not found")
    if not portal.is_active:
        raise UploadRequestError(400, "Portal is not active")
    await _check_storage_accounts(db, portal)
    if portal.require_client_name and not (client_name or "").strip():
        raise UploadRequestError(400, "Client name is required")
    if portal.require_client_email and not (client_email or "").strip():
        raise UploadRequestError(400, "Client email is required")
    if file_size > portal.max_file_size:
        raise UploadRequestError(
            400, f"File too large. Maximum size is {portal.max_file_size / 1024 / 1024:.0f}MB",
        )
    if not mime_allowed(mime_type, portal.allowed_file_types or []):
        raise UploadRequestError(400, "This file type is not allowed for this portal")
    return portal


async def init_session(db: AsyncSession, body: ChunkedInitRequest) -> UploadSession:
    if not body.portal_id or not body.file_name or not body.mime_type or body.file_size <= 0:
        raise UploadRequestError(400, "Missing required fields")
    if not 1 <= body.total_chunks <= settings.UPLOAD_MAX_CHUNKS:
        raise UploadRequestError(400, f"totalChunks must be between 1 and {settings.UPLOAD_MAX_CHUNKS}")

    await validate_portal_upload(
        db, body.portal_id, body.file_size, body.mime_type, body.client_name, body.client_email,
    )
    session = UploadSession(
        portal_id=body.portal_id,
        file_name=body.file_name,
        file_size=body.file_size,
        mime_type=body.mime_type,
        total_chunks=body.total_chunks,
        client_name=body.client_name,
        client_email=body.client_email,
        client_message=body.client_message,
        status="in_progress",
    )
    db.add(session)
    await db.commit()
    await db.refresh(session)
    logger.info(
        "Upload session %s created: %s (%d bytes, %d chunks)",
        session.id, session.file_name, session.file_size, session.total_chunks,
    )
    return session


async def _received_count(db: AsyncSession, upload_id: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(UploadedChunk).where(UploadedChunk.upload_id == upload_id)
    )
    return result.scalar_one()


async def store_chunk(
    db: AsyncSession,
    upload_id: str,
    chunk_index: int,
    total_chunks: int,
    data: bytes,
) -> int:
    """Persist one chunk. Re-sending an index overwrites it. Returns chunks received so far."""
    session = await db.get(UploadSession, upload_id)
    if session is None:
        raise UploadRequestError(404, "Upload session not found")
    if session.status != "in_progress":
        raise UploadRequestError(400, "Upload session is not active")
    if total_chunks != session.total_chunks:
        raise UploadRequestError(400, "totalChunks does not match upload session")
    if not 0 <= chunk_index < session.total_chunks:
        raise UploadRequestError(400, f"Invalid chunk index {chunk_index}")
    if len(data) > settings.UPLOAD_MAX_CHUNK_BYTES:
        raise UploadRequestError(413, "Chunk too large")

    size = await file_storage.save_chunk(upload_id, chunk_index, data)

    existing = await db.execute(
        select(UploadedChunk).where(
            UploadedChunk.upload_id == upload_id, UploadedChunk.chunk_index == chunk_index,
        )
    )
    row = existing.scalar_one_or_none()
    if row is None:
        db.add(UploadedChunk(upload_id=upload_id, chunk_index=chunk_index, size_bytes=size))
        try:
            await db.commit()
        except IntegrityError:
            # Concurrent retry of the same index landed first
            await db.rollback()
            row = (await db.execute(
                select(UploadedChunk).where(
                    UploadedChunk.upload_id == upload_id, UploadedChunk.chunk_index == chunk_index,
                )
            )).scalar_one()
    if row is not None:
        row.size_bytes = size
        row.received_at = datetime.now(timezone.utc)
        await db.commit()

    received = await _received_count(db, upload_id)
    logger.debug("Upload %s: chunk %d/%d stored (%d bytes)", upload_id, chunk_index + 1, total_chunks, size)
    return received


async def _release_claim(db: AsyncSession, session: UploadSession) -> None:
    """Return a claimed session to in_progress so the client can complete it again."""
    await db.execute(
        update(UploadSession)
        .where(UploadSession.id == session.id, UploadSession.status == "completing")
        .values(status="in_progress")
    )
    await db.commit()


async def complete_session(db: AsyncSession, body: ChunkedCompleteRequest) -> FileRecord:
    """Verify every chunk is present, assemble them, and record the finished file."""
    if not body.upload_id:
        raise UploadRequestError(400, "Missing required fields")
    session = await db.get(UploadSession, body.upload_id)
    if session is None:
        raise UploadRequestError(404, "Upload session not found")
    if session.status != "in_progress":
        raise UploadRequestError(400, "Upload session is not active")
    if body.portal_id and body.portal_id != session.portal_id:
        raise UploadRequestError(400, "Portal does not match upload session")

    result = await db.execute(
        select(UploadedChunk.chunk_index, UploadedChunk.size_bytes).where(UploadedChunk.upload_id == session.id)
    )
    sizes = {index: size for index, size in result.all()}
    for i in range(session.total_chunks):
        if i not in sizes:
            raise UploadRequestError(400, f"Missing chunk {i}. Upload may be incomplete.")
    received_bytes = sum(sizes.values())
    if received_bytes != session.file_size:
        raise UploadRequestError(
            400, f"Size mismatch: expected {session.file_size} bytes, received {received_bytes}",
        )

    # Claim the session so concurrent completes cannot both assemble it
    claim = await db.execute(
        update(UploadSession)
        .where(UploadSession.id == session.id, UploadSession.status == "in_progress")
        .values(status="completing")
    )
    await db.commit()
    if claim.rowcount == 0:
        raise UploadRequestError(400, "Upload session is not active")

    try:
        storage_path, written = await file_storage.assemble(session.id, session.total_chunks, session.file_name)
    except OSError as e:
        logger.error("Assembling upload %s failed: %s", session.id, e)
        await _release_claim(db, session)
        raise UploadRequestError(500, "Failed to upload file")
    if written != session.file_size:
        await file_storage.delete(storage_path)
        await _release_claim(db, session)
        raise UploadRequestError(500, "Failed to upload file")

    portal = await db.get(Portal, session.portal_id)
    record = FileRecord(
        portal_id=session.portal_id,
        upload_id=session.id,
        original_name=session.file_name,
        mime_type=session.mime_type,
        size_bytes=written,
        storage_path=storage_path,
        storage_provider=portal.storage_provider if portal else "local",
        client_name=session.client_name,
        client_email=session.client_email,
        client_message=session.client_message,
    )
    db.add(record)
    session.status = "completed"
    session.completed_at = datetime.now(timezone.utc)
    await db.execute(delete(UploadedChunk).where(UploadedChunk.upload_id == session.id))
    try:
        await db.commit()
    except IntegrityError:
        # files.upload_id is unique; another request already recorded this session
        await db.rollback()
        await file_storage.delete(storage_path)
        raise UploadRequestError(400, "Upload session is not active")
    await db.refresh(record)
    file_storage.delete_chunks(session.id)

    logger.info("Upload session %s completed as file %s (%d bytes)", session.id, record.id, written)
    return record


async def session_status(db: AsyncSession, upload_id: str) -> dict:
    session = await db.get(UploadSession, upload_id)
    if session is None:
        raise UploadRequestError(404, "Upload session not found")
    result = await db.execute(
        select(UploadedChunk.chunk_index, UploadedChunk.size_bytes)
        .where(UploadedChunk.upload_id == upload_id)
        .order_by(UploadedChunk.chunk_index)
    )
    rows = result.all()
    received_bytes = sum(size for _, size in rows)
    if session.status == "completed":
        progress = 100.0
    else:
        progress = round(len(rows) / session.total_chunks * 100, 1) if session.total_chunks else 0.0
    return {
        "upload_id": session.id,
        "status": session.status,
        "file_name": session.file_name,
        "file_size": session.file_size,
        "total_chunks": session.total_chunks,
        "received_chunks": [index for index, _ in rows],
        "received_bytes": received_bytes,
        "progress": progress,
    }


async def single_upload(
    db: AsyncSession,
    portal_id: str,
    file_name: str,
    mime_type: str,
    data: bytes,
    client_name: Optional[str] = None,
    client_email: Optional[str] = None,
    client_message: Optional[str] = None,
) -> tuple[UploadSession, FileRecord]:
    """Store a whole file from one request; recorded as a one-chunk completed session."""
    if not portal_id or not file_name:
        raise UploadRequestError(400, "Missing required fields")
    portal = await validate_portal_upload(db, portal_id, len(data), mime_type, client_name, client_email)

    storage_path = await file_storage.save(data, file_name)
    now = datetime.now(timezone.utc)
    session = UploadSession(
        portal_id=portal_id,
        file_name=file_name,
        file_size=len(data),
        mime_type=mime_type,
        total_chunks=1,
        client_name=client_name,
        client_email=client_email,
        client_message=client_message,
        status="completed",
        completed_at=now,
    )
    db.add(session)
    await db.flush()
    record = FileRecord(
        portal_id=portal_id,
        upload_id=session.id,
        original_name=file_name,
        mime_type=mime_type,
        size_bytes=len(data),
        storage_path=storage_path,
        storage_provider=portal.storage_provider,
        client_name=client_name,
        client_email=client_email,
        client_message=client_message,
    )
    db.add(record)
    await db.commit()
    await db.refresh(record)
    logger.info("Single-request upload stored as file %s (%d bytes)", record.id, len(data))
    return session, record

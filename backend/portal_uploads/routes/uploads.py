"""Upload API - chunked sessions (init / chunk / complete / status) and single-request upload."""
from typing import Optional
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from portal_uploads.database import get_db
from portal_uploads.schemas.upload import (
    ChunkedCompleteRequest,
    ChunkedCompleteResponse,
    ChunkedInitRequest,
    ChunkedInitResponse,
    ChunkReceivedResponse,
    SingleUploadResponse,
    UploadStatusResponse,
)
from portal_uploads.services import upload_sessions
from portal_uploads.services.upload_sessions import UploadRequestError, file_link

router = APIRouter(prefix="/api/upload", tags=["upload"])


def _http_error(e: UploadRequestError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/chunked/init", response_model=ChunkedInitResponse)
async def init_chunked_upload(body: ChunkedInitRequest, db: AsyncSession = Depends(get_db)):
    """Open an upload session. The token field is accepted but not verified here."""
    try:
        session = await upload_sessions.init_session(db, body)
    except UploadRequestError as e:
        raise _http_error(e)
    return ChunkedInitResponse(
        upload_id=session.id, file_name=session.file_name, total_chunks=session.total_chunks,
    )


@router.post("/chunked/chunk", response_model=ChunkReceivedResponse)
async def upload_chunk(
    upload_id: str = Form(..., alias="uploadId"),
    chunk_index: int = Form(..., alias="chunkIndex"),
    total_chunks: int = Form(..., alias="totalChunks"),
    chunk: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
):
    """Receive one chunk. Re-sending an index replaces the earlier copy."""
    data = await chunk.read()
    try:
        received = await upload_sessions.store_chunk(db, upload_id, chunk_index, total_chunks, data)
    except UploadRequestError as e:
        raise _http_error(e)
    return ChunkReceivedResponse(
        upload_id=upload_id, chunk_index=chunk_index, received=received, size=len(data),
    )


@router.post("/chunked/complete", response_model=ChunkedCompleteResponse)
async def complete_chunked_upload(body: ChunkedCompleteRequest, db: AsyncSession = Depends(get_db)):
    try:
        record = await upload_sessions.complete_session(db, body)
    except UploadRequestError as e:
        raise _http_error(e)
    return ChunkedCompleteResponse(
        success=True,
        upload_id=record.upload_id,
        file_name=record.original_name,
        file_id=record.id,
        web_view_link=file_link(record.id),
        storage_provider=record.storage_provider,
    )


@router.get("/chunked/{upload_id}", response_model=UploadStatusResponse)
async def get_upload_status(upload_id: str, db: AsyncSession = Depends(get_db)):
    """Received chunk indices and progress of a session."""
    try:
        status = await upload_sessions.session_status(db, upload_id)
    except UploadRequestError as e:
        raise _http_error(e)
    return UploadStatusResponse(**status)


@router.post("", response_model=SingleUploadResponse)
async def upload_single(
    file: UploadFile = File(...),
    portal_id: str = Form(..., alias="portalId"),
    client_name: Optional[str] = Form(None, alias="clientName"),
    client_email: Optional[str] = Form(None, alias="clientEmail"),
    client_message: Optional[str] = Form(None, alias="clientMessage"),
    token: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
):
    """Upload a whole file in one multipart request."""
    data = await file.read()
    try:
        session, record = await upload_sessions.single_upload(
            db,
            portal_id,
            file.filename or "unnamed",
            file.content_type or "application/octet-stream",
            data,
            client_name=client_name,
            client_email=client_email,
            client_message=client_message,
        )
    except UploadRequestError as e:
        raise _http_error(e)
    return SingleUploadResponse(upload_id=session.id, file_id=record.id, web_view_link=file_link(record.id))

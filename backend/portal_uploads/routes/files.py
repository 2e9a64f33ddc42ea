"""Files API routes - metadata and download of finalized uploads."""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from portal_uploads.database import get_db
from portal_uploads.models.file_record import FileRecord
from portal_uploads.schemas.file import FileResponse as FileResponseSchema

router = APIRouter(prefix="/api/files", tags=["files"])


async def _get_record(db: AsyncSession, file_id: str) -> FileRecord:
    file_rec = await db.get(FileRecord, file_id)
    if not file_rec:
        raise HTTPException(status_code=404, detail="File not found")
    return file_rec


@router.get("/{file_id}", response_model=FileResponseSchema)
async def get_file_metadata(file_id: str, db: AsyncSession = Depends(get_db)):
    """Get file metadata by ID."""
    return await _get_record(db, file_id)


@router.get("/{file_id}/download")
async def download_file(file_id: str, db: AsyncSession = Depends(get_db)):
    """Download a file by ID."""
    file_rec = await _get_record(db, file_id)
    return FileResponse(
        path=file_rec.storage_path,
        filename=file_rec.original_name,
        media_type=file_rec.mime_type or "application/octet-stream",
    )

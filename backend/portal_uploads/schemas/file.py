"""File response schema."""
from typing import Optional
from datetime import datetime
from portal_uploads.schemas.base import CamelORMModel


class FileResponse(CamelORMModel):
    id: str
    portal_id: str
    upload_id: Optional[str] = None
    original_name: str
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    storage_provider: str
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    created_at: datetime

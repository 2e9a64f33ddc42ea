"""Upload request/response schemas (chunked and single-request)."""
from typing import Optional
from pydantic import Field
from portal_uploads.schemas.base import CamelModel


class ChunkedInitRequest(CamelModel):
    portal_id: str = ""
    file_name: str = ""
    file_size: int = Field(default=0, ge=0)
    mime_type: str = ""
    total_chunks: int = 0
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    client_message: Optional[str] = None
    token: Optional[str] = None


class ChunkedInitResponse(CamelModel):
    upload_id: str
    file_name: str
    total_chunks: int


class ChunkReceivedResponse(CamelModel):
    upload_id: str
    chunk_index: int
    received: int
    size: int


class ChunkedCompleteRequest(CamelModel):
    upload_id: str = ""
    portal_id: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    token: Optional[str] = None


class ChunkedCompleteResponse(CamelModel):
    success: bool = True
    upload_id: str
    file_name: str
    file_id: str
    web_view_link: str
    storage_provider: str


class UploadStatusResponse(CamelModel):
    upload_id: str
    status: str
    file_name: str
    file_size: int
    total_chunks: int
    received_chunks: list[int]
    received_bytes: int
    progress: float


class SingleUploadResponse(CamelModel):
    upload_id: str
    file_id: str
    web_view_link: str

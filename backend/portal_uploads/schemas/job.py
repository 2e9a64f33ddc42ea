"""Job request/response schemas."""
from typing import Optional
from datetime import datetime
from portal_uploads.schemas.base import CamelModel, CamelORMModel


class JobCreate(CamelModel):
    job_type: str
    params: dict = {}


class JobResponse(CamelORMModel):
    id: str
    job_type: str
    status: str
    params: dict
    result: Optional[dict] = None
    progress: dict
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

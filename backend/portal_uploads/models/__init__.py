"""Import all models so SQLAlchemy metadata knows about them."""
from portal_uploads.models.base import Base
from portal_uploads.models.user import User, OAuthAccount
from portal_uploads.models.storage_account import StorageAccount, StorageAccountStatus
from portal_uploads.models.portal import Portal
from portal_uploads.models.upload_session import UploadSession, UploadedChunk
from portal_uploads.models.file_record import FileRecord
from portal_uploads.models.job import Job

__all__ = [
    "Base",
    "User", "OAuthAccount", "StorageAccount", "StorageAccountStatus",
    "Portal", "UploadSession", "UploadedChunk", "FileRecord", "Job",
]

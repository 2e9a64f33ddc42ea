"""Storage-account request/response schemas."""
from typing import Optional
from datetime import datetime
from pydantic import computed_field
from portal_uploads.schemas.base import CamelModel, CamelORMModel
from portal_uploads.services.provisioning.account_states import capabilities


class LinkAccountRequest(CamelModel):
    user_id: str
    provider: str
    provider_account_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    force_create: bool = False
    respect_disconnected: bool = True


class EnsureAccountsRequest(CamelModel):
    user_id: str
    force_create: bool = False
    respect_disconnected: bool = True


class StatusUpdateRequest(CamelModel):
    status: str
    error: Optional[str] = None


class HealthCheckRequest(CamelModel):
    user_id: Optional[str] = None
    reactivate_disconnected: bool = False


class StorageAccountResponse(CamelORMModel):
    id: str
    user_id: str
    provider: str
    provider_account_id: str
    display_name: str
    email: Optional[str] = None
    status: str
    is_active: bool
    last_accessed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @computed_field(alias="canCreateUploads")
    @property
    def can_create_uploads(self) -> bool:
        return capabilities(self.status).can_create_uploads

    @computed_field(alias="canAccessFiles")
    @property
    def can_access_files(self) -> bool:
        return capabilities(self.status).can_access_files

    @computed_field(alias="requiresReauth")
    @property
    def requires_reauth(self) -> bool:
        return capabilities(self.status).requires_reauth

    @computed_field(alias="showInUi")
    @property
    def show_in_ui(self) -> bool:
        return capabilities(self.status).show_in_ui


class ProvisioningResponse(CamelModel):
    success: bool
    operation: str
    storage_account_id: Optional[str] = None
    error: Optional[str] = None
    cached: bool = False
    retryable: bool = False


class EnsureResponse(CamelModel):
    success: bool
    created: int
    reactivated: int
    validated: int
    errors: list[str]
    details: list[ProvisioningResponse] = []

"""Storage accounts API - link, ensure, list, status changes, health check."""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from portal_uploads.schemas.storage_account import (
    EnsureAccountsRequest,
    EnsureResponse,
    HealthCheckRequest,
    LinkAccountRequest,
    ProvisioningResponse,
    StatusUpdateRequest,
    StorageAccountResponse,
)
from portal_uploads.services.provisioning import get_storage_manager
from portal_uploads.services.provisioning.account_states import InvalidTransitionError
from portal_uploads.services.provisioning.maintenance import perform_health_check
from portal_uploads.services.provisioning.manager import (
    OAuthIdentity,
    ProvisioningResult,
    StorageAccountManager,
    StorageAccountNotFoundError,
)

router = APIRouter(prefix="/api/storage", tags=["storage"])


def _provisioning_response(result: ProvisioningResult) -> ProvisioningResponse:
    return ProvisioningResponse(
        success=result.success,
        operation=result.operation.value,
        storage_account_id=result.storage_account_id,
        error=result.error,
        cached=result.cached,
        retryable=result.retryable,
    )


@router.post("/accounts/link", response_model=ProvisioningResponse)
async def link_account(
    body: LinkAccountRequest,
    manager: StorageAccountManager = Depends(get_storage_manager),
):
    """OAuth-callback entry point: create or fetch the storage account for one identity."""
    result = await manager.create_or_get_storage_account(
        body.user_id,
        OAuthIdentity(body.provider, body.provider_account_id),
        body.email,
        body.display_name,
        force_create=body.force_create,
        respect_disconnected=body.respect_disconnected,
    )
    return _provisioning_response(result)


@router.post("/accounts/ensure", response_model=EnsureResponse)
async def ensure_accounts(
    body: EnsureAccountsRequest,
    manager: StorageAccountManager = Depends(get_storage_manager),
):
    result = await manager.ensure_storage_accounts_for_user(
        body.user_id,
        force_create=body.force_create,
        respect_disconnected=body.respect_disconnected,
    )
    return EnsureResponse(
        success=result.success,
        created=result.created,
        reactivated=result.reactivated,
        validated=result.validated,
        errors=result.errors,
        details=[_provisioning_response(d) for d in result.details],
    )


@router.get("/accounts", response_model=list[StorageAccountResponse])
async def list_accounts(
    user_id: Optional[str] = Query(None, alias="userId"),
    manager: StorageAccountManager = Depends(get_storage_manager),
):
    return await manager.list_accounts(user_id)


@router.patch("/accounts/{account_id}/status", response_model=StorageAccountResponse)
async def update_account_status(
    account_id: str,
    body: StatusUpdateRequest,
    manager: StorageAccountManager = Depends(get_storage_manager),
):
    """Apply a status transition; illegal transitions answer 409."""
    try:
        return await manager.update_status(account_id, body.status, body.error)
    except StorageAccountNotFoundError:
        raise HTTPException(404, "Storage account not found")
    except InvalidTransitionError as e:
        raise HTTPException(409, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.post("/health-check")
async def health_check(
    body: HealthCheckRequest,
    manager: StorageAccountManager = Depends(get_storage_manager),
):
    """Reconcile storage accounts with OAuth links for one user, or all users."""
    return await perform_health_check(
        manager, body.user_id, reactivate_disconnected=body.reactivate_disconnected,
    )

"""Bulk provisioning sweeps and the storage-account health check.

Both are run from background jobs and from the health-check route. They
report progress through an optional async ``progress_callback(current,
total, message)`` and stop cooperatively when ``cancel_check()`` returns True.
"""
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy import select

from portal_uploads.models.storage_account import StorageAccountStatus
from portal_uploads.models.user import User, OAuthAccount
from portal_uploads.services.provisioning.manager import (
    OAuthIdentity, ProvisioningOutcome, StorageAccountManager, normalize_provider,
)

logger = logging.getLogger(__name__)

SUPPORTED_OAUTH_PROVIDERS = ("google", "google_drive", "dropbox")

ProgressCallback = Callable[[int, int, str], Awaitable[None]]
CancelCheck = Callable[[], Awaitable[bool]]


class MaintenanceCancelledError(Exception):
    pass


async def _user_id_batches(manager: StorageAccountManager, batch_size: int, with_oauth_only: bool):
    """Yield lists of user ids in id order, one keyset page at a time."""
    last_id = None
    while True:
        query = select(User.id).order_by(User.id).limit(batch_size)
        if with_oauth_only:
            query = query.where(
                User.id.in_(
                    select(OAuthAccount.user_id).where(OAuthAccount.provider.in_(SUPPORTED_OAUTH_PROVIDERS))
                )
            )
        if last_id is not None:
            query = query.where(User.id > last_id)
        async with manager.session_factory() as db:
            ids = list((await db.execute(query)).scalars().all())
        if not ids:
            return
        yield ids
        if len(ids) < batch_size:
            return
        last_id = ids[-1]


async def ensure_storage_accounts_for_all_users(
    manager: StorageAccountManager,
    batch_size: int = 100,
    *,
    force_create: bool = False,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_check: Optional[CancelCheck] = None,
) -> dict:
    """Run the per-user ensure for every user that has a supported OAuth account."""
    totals = {"usersProcessed": 0, "accountsCreated": 0, "accountsReactivated": 0, "errors": []}
    logger.info("Bulk storage-account ensure started (batch_size=%d)", batch_size)

    async for batch in _user_id_batches(manager, batch_size, with_oauth_only=True):
        if cancel_check and await cancel_check():
            raise MaintenanceCancelledError("Bulk ensure cancelled")
        for user_id in batch:
            result = await manager.ensure_storage_accounts_for_user(user_id, force_create=force_create)
            totals["usersProcessed"] += 1
            totals["accountsCreated"] += result.created
            totals["accountsReactivated"] += result.reactivated
            totals["errors"].extend(f"{user_id}: {err}" for err in result.errors)
        if progress_callback:
            await progress_callback(
                totals["usersProcessed"], 0, f"Processed {totals['usersProcessed']} users",
            )

    logger.info(
        "Bulk storage-account ensure finished: %d users, %d created, %d errors",
        totals["usersProcessed"], totals["accountsCreated"], len(totals["errors"]),
    )
    return totals


async def _check_user(
    manager: StorageAccountManager,
    user_id: str,
    reactivate_disconnected: bool,
    summary: dict,
    actions: list[str],
) -> None:
    user = await manager.find_user(user_id)
    if user is None:
        raise LookupError(f"User {user_id} not found")

    linked: dict[tuple[str, str], OAuthAccount] = {}
    for oauth in user.accounts:
        provider = normalize_provider(oauth.provider)
        if provider:
            linked[(provider, oauth.provider_account_id)] = oauth

    accounts = await manager.list_accounts(user_id)
    existing = {(a.provider, a.provider_account_id): a for a in accounts}

    # Missing storage accounts for linked OAuth identities
    for (provider, external_id), oauth in linked.items():
        if (provider, external_id) in existing:
            continue
        summary["issues_found"] += 1
        result = await manager.create_or_get_storage_account(
            user_id, OAuthIdentity(oauth.provider, external_id), user.email, user.name,
        )
        if result.success:
            summary["issues_fixed"] += 1
            actions.append(f"Created {provider} storage account for user {user_id}")
        else:
            actions.append(f"Failed to create {provider} storage account for user {user_id}: {result.error}")

    for key, account in existing.items():
        if key not in linked:
            # Orphan: OAuth link is gone
            if account.status == StorageAccountStatus.DISCONNECTED.value:
                continue
            summary["issues_found"] += 1
            await manager.update_status(
                account.id, StorageAccountStatus.DISCONNECTED, error="OAuth account no longer linked",
            )
            summary["issues_fixed"] += 1
            actions.append(f"Marked orphaned {account.provider} account {account.id} as DISCONNECTED")
        elif reactivate_disconnected and account.status == StorageAccountStatus.DISCONNECTED.value:
            summary["issues_found"] += 1
            oauth = linked[key]
            result = await manager.create_or_get_storage_account(
                user_id, OAuthIdentity(oauth.provider, oauth.provider_account_id),
                user.email, user.name, force_create=True,
            )
            if result.operation == ProvisioningOutcome.REACTIVATED:
                summary["issues_fixed"] += 1
                actions.append(f"Reactivated {account.provider} account {account.id}")


async def perform_health_check(
    manager: StorageAccountManager,
    user_id: Optional[str] = None,
    *,
    reactivate_disconnected: bool = False,
    batch_size: int = 100,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_check: Optional[CancelCheck] = None,
) -> dict:
    """Reconcile storage accounts with OAuth links for one user or all users.

    - creates missing storage accounts
    - marks orphaned accounts (no OAuth row) DISCONNECTED
    - optionally reactivates DISCONNECTED accounts whose OAuth row still exists
    """
    summary = {"users_checked": 0, "issues_found": 0, "issues_fixed": 0, "critical_errors": 0}
    actions: list[str] = []
    errors: list[str] = []

    async def check(uid: str) -> None:
        try:
            await _check_user(manager, uid, reactivate_disconnected, summary, actions)
        except Exception as e:
            logger.error("Health check failed for user %s: %s", uid, e)
            summary["critical_errors"] += 1
            errors.append(f"{uid}: {e}")
        summary["users_checked"] += 1

    if user_id is not None:
        await check(user_id)
    else:
        async for batch in _user_id_batches(manager, batch_size, with_oauth_only=False):
            if cancel_check and await cancel_check():
                raise MaintenanceCancelledError("Health check cancelled")
            for uid in batch:
                await check(uid)
            if progress_callback:
                await progress_callback(
                    summary["users_checked"], 0, f"Checked {summary['users_checked']} users",
                )

    logger.info(
        "Storage health check: %d users, %d issues found, %d fixed, %d critical",
        summary["users_checked"], summary["issues_found"], summary["issues_fixed"], summary["critical_errors"],
    )
    return {"summary": summary, "actions": actions, "errors": errors}

"""Tests for bulk ensure and the storage health check."""
import pytest
from sqlalchemy import select

from portal_uploads.models import StorageAccount
from portal_uploads.services.provisioning.maintenance import (
    MaintenanceCancelledError,
    ensure_storage_accounts_for_all_users,
    perform_health_check,
)
from portal_uploads.services.provisioning.manager import OAuthIdentity


async def accounts_by_user(session_factory) -> dict:
    async with session_factory() as db:
        rows = (await db.execute(select(StorageAccount))).scalars().all()
    result = {}
    for row in rows:
        result.setdefault(row.user_id, []).append(row)
    return result


async def test_bulk_ensure_pages_through_users(manager, make_user, session_factory):
    await make_user("user-a", accounts=(("google", "a-1"),), email="a@example.com")
    await make_user("user-b", accounts=(("dropbox", "b-1"),), email="b@example.com")
    await make_user("user-c", accounts=(("google", "c-1"), ("dropbox", "c-2")), email="c@example.com")
    await make_user("user-d", accounts=(("github", "d-1"),), email="d@example.com")

    pages = []

    async def progress(current, total, message):
        pages.append(current)

    totals = await ensure_storage_accounts_for_all_users(manager, batch_size=2, progress_callback=progress)
    assert totals["usersProcessed"] == 3
    assert totals["accountsCreated"] == 4
    assert totals["errors"] == []
    assert pages == [2, 3]

    by_user = await accounts_by_user(session_factory)
    assert sorted(by_user) == ["user-a", "user-b", "user-c"]


async def test_bulk_ensure_stops_when_cancelled(manager, make_user):
    await make_user("user-a", email="a@example.com")

    async def cancelled():
        return True

    with pytest.raises(MaintenanceCancelledError):
        await ensure_storage_accounts_for_all_users(manager, cancel_check=cancelled)


async def test_health_check_creates_missing_accounts(manager, make_user, session_factory):
    await make_user()
    report = await perform_health_check(manager, "user-1")
    assert report["summary"] == {"users_checked": 1, "issues_found": 1, "issues_fixed": 1, "critical_errors": 0}
    assert report["actions"] == ["Created google_drive storage account for user user-1"]
    assert len((await accounts_by_user(session_factory))["user-1"]) == 1


async def test_health_check_disconnects_orphans(manager, make_user, session_factory):
    await make_user(accounts=())
    async with session_factory() as db:
        db.add(StorageAccount(
            user_id="user-1", provider="dropbox", provider_account_id="gone",
            display_name="Old Dropbox", status="ACTIVE", is_active=True,
        ))
        await db.commit()

    report = await perform_health_check(manager)
    assert report["summary"]["issues_fixed"] == 1
    account = (await accounts_by_user(session_factory))["user-1"][0]
    assert account.status == "DISCONNECTED"
    assert account.last_error == "OAuth account no longer linked"

    # Already-disconnected orphans are left alone
    again = await perform_health_check(manager)
    assert again["summary"]["issues_found"] == 0


async def test_health_check_reactivation_is_opt_in(manager, make_user, session_factory):
    await make_user()
    created = await manager.create_or_get_storage_account("user-1", OAuthIdentity("google", "g-1"))
    await manager.update_status(created.storage_account_id, "DISCONNECTED")

    report = await perform_health_check(manager, "user-1")
    assert report["summary"]["issues_found"] == 0

    report = await perform_health_check(manager, "user-1", reactivate_disconnected=True)
    assert report["summary"]["issues_fixed"] == 1
    account = (await accounts_by_user(session_factory))["user-1"][0]
    assert account.status == "ACTIVE"


async def test_health_check_unknown_user_is_critical(manager):
    report = await perform_health_check(manager, "nobody")
    assert report["summary"]["critical_errors"] == 1
    assert report["errors"][0].startswith("nobody:")

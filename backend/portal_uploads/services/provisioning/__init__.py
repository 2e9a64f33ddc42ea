"""Storage-account provisioning: locks, idempotency, the manager and maintenance sweeps."""
from portal_uploads.database import async_session
from portal_uploads.services.provisioning.backends import build_idempotency_store, build_lock_store
from portal_uploads.services.provisioning.manager import (
    EnsureResult,
    OAuthIdentity,
    ProvisioningOutcome,
    ProvisioningResult,
    StorageAccountManager,
)

_manager: StorageAccountManager | None = None


def get_storage_manager() -> StorageAccountManager:
    """Process-wide manager wired to the app database and configured stores."""
    global _manager
    if _manager is None:
        _manager = StorageAccountManager(async_session, build_lock_store(), build_idempotency_store())
    return _manager


def set_storage_manager(manager: StorageAccountManager | None) -> None:
    global _manager
    _manager = manager


__all__ = [
    "EnsureResult", "OAuthIdentity", "ProvisioningOutcome", "ProvisioningResult",
    "StorageAccountManager", "get_storage_manager", "set_storage_manager",
]

"""Storage-account status transitions and per-status capabilities."""
from dataclasses import dataclass

from portal_uploads.models.storage_account import StorageAccountStatus

ACTIVE = StorageAccountStatus.ACTIVE
DISCONNECTED = StorageAccountStatus.DISCONNECTED
ERROR = StorageAccountStatus.ERROR

ALLOWED_TRANSITIONS: dict[StorageAccountStatus, frozenset[StorageAccountStatus]] = {
    ACTIVE: frozenset({DISCONNECTED, ERROR}),
    DISCONNECTED: frozenset({ACTIVE}),  # only by explicit reactivation
    # OAuth revoked while the account was failing
    ERROR: frozenset({ACTIVE, DISCONNECTED}),
}


@dataclass(frozen=True)
class AccountCapabilities:
    can_create_uploads: bool
    can_access_files: bool
    requires_reauth: bool
    show_in_ui: bool


STATE_CAPABILITIES: dict[StorageAccountStatus, AccountCapabilities] = {
    ACTIVE: AccountCapabilities(
        can_create_uploads=True, can_access_files=True, requires_reauth=False, show_in_ui=True,
    ),
    # OAuth revoked: hidden until the user reconnects
    DISCONNECTED: AccountCapabilities(
        can_create_uploads=False, can_access_files=False, requires_reauth=True, show_in_ui=False,
    ),
    # Temporary provider trouble: shown with an error badge, may clear on its own
    ERROR: AccountCapabilities(
        can_create_uploads=False, can_access_files=False, requires_reauth=False, show_in_ui=True,
    ),
}


class InvalidTransitionError(ValueError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid status transition {current} -> {target}")


def parse_status(value: str | StorageAccountStatus) -> StorageAccountStatus:
    """Coerce a string to a status; raises ValueError for unknown names."""
    if isinstance(value, StorageAccountStatus):
        return value
    try:
        return StorageAccountStatus(value.upper())
    except ValueError:
        raise ValueError(f"Unknown storage account status: {value}") from None


def is_transition_allowed(current: str | StorageAccountStatus, target: str | StorageAccountStatus) -> bool:
    return parse_status(target) in ALLOWED_TRANSITIONS.get(parse_status(current), frozenset())


def capabilities(status: str | StorageAccountStatus) -> AccountCapabilities:
    return STATE_CAPABILITIES[parse_status(status)]


def can_create_uploads(status) -> bool:
    return capabilities(status).can_create_uploads


def can_access_files(status) -> bool:
    return capabilities(status).can_access_files


def requires_reauth(status) -> bool:
    return capabilities(status).requires_reauth


def show_in_ui(status) -> bool:
    return capabilities(status).show_in_ui

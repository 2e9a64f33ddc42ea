"""Storage-account provisioning.

Turns an OAuth identity (user, provider, external account id) into exactly one
StorageAccount row, no matter how many callers race on the same identity.

Per identity the flow is: normalize provider -> take the distributed lock ->
consult the idempotency store -> run one DB transaction -> cache successes ->
release the lock. A unique constraint on the triple backs the lock up when two
processes use independent lock stores.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from portal_uploads.config import settings
from portal_uploads.models.storage_account import StorageAccount, StorageAccountStatus
from portal_uploads.models.user import User, OAuthAccount
from portal_uploads.services.provisioning.account_states import (
    InvalidTransitionError, is_transition_allowed, parse_status,
)
from portal_uploads.services.provisioning.idempotency import (
    IdempotencyStore, ensure_user_key, storage_account_key,
)
from portal_uploads.services.provisioning.locks import LockAcquisitionError, LockStore, hold_lock

logger = logging.getLogger(__name__)

# OAuth provider name -> storage provider
PROVIDER_ALIASES = {
    "google": "google_drive",
    "google_drive": "google_drive",
    "dropbox": "dropbox",
}

# storage provider -> OAuth provider names that back it
OAUTH_PROVIDERS = {
    "google_drive": ("google", "google_drive"),
    "dropbox": ("dropbox",),
}


def normalize_provider(provider: str) -> Optional[str]:
    return PROVIDER_ALIASES.get((provider or "").strip().lower())


class ProvisioningOutcome(str, enum.Enum):
    CREATED = "CREATED"
    EXISTING_ACTIVE = "EXISTING_ACTIVE"
    EXISTING_DISCONNECTED = "EXISTING_DISCONNECTED"
    REACTIVATED = "REACTIVATED"
    INVALID_PROVIDER = "INVALID_PROVIDER"
    OAUTH_NOT_FOUND = "OAUTH_NOT_FOUND"
    LOCK_FAILED = "LOCK_FAILED"
    FAILED = "FAILED"


RETRYABLE_OUTCOMES = {ProvisioningOutcome.LOCK_FAILED, ProvisioningOutcome.FAILED}


@dataclass(frozen=True)
class OAuthIdentity:
    provider: str
    provider_account_id: str


@dataclass
class ProvisioningResult:
    success: bool
    operation: ProvisioningOutcome
    user_id: str
    provider: str
    provider_account_id: str
    storage_account_id: Optional[str] = None
    error: Optional[str] = None
    cached: bool = False

    @property
    def created(self) -> bool:
        return self.operation == ProvisioningOutcome.CREATED

    @property
    def retryable(self) -> bool:
        return self.operation in RETRYABLE_OUTCOMES

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "operation": self.operation.value,
            "user_id": self.user_id,
            "provider": self.provider,
            "provider_account_id": self.provider_account_id,
            "storage_account_id": self.storage_account_id,
            "error": self.error,
        }

    @classmethod
    def from_cache(cls, data: dict) -> "ProvisioningResult":
        """Rebuild a cached result. Only the first caller ever sees CREATED/REACTIVATED."""
        operation = ProvisioningOutcome(data["operation"])
        if operation in (ProvisioningOutcome.CREATED, ProvisioningOutcome.REACTIVATED):
            operation = ProvisioningOutcome.EXISTING_ACTIVE
        return cls(
            success=data["success"],
            operation=operation,
            user_id=data["user_id"],
            provider=data["provider"],
            provider_account_id=data["provider_account_id"],
            storage_account_id=data.get("storage_account_id"),
            error=data.get("error"),
            cached=True,
        )


@dataclass
class EnsureResult:
    created: int = 0
    reactivated: int = 0
    validated: int = 0
    errors: list[str] = field(default_factory=list)
    details: list[ProvisioningResult] = field(default_factory=list)
    cached: bool = False

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "reactivated": self.reactivated,
            "validated": self.validated,
            "errors": list(self.errors),
            "details": [d.to_dict() for d in self.details],
        }

    @classmethod
    def from_cache(cls, data: dict) -> "EnsureResult":
        # A replayed sweep changed nothing, so everything counts as validated
        return cls(
            created=0,
            reactivated=0,
            validated=data["created"] + data["reactivated"] + data["validated"],
            errors=list(data["errors"]),
            details=[ProvisioningResult.from_cache(d) for d in data["details"]],
            cached=True,
        )


class StorageAccountNotFoundError(LookupError):
    pass


class StorageAccountManager:
    """Serialized, idempotent creation and state management of storage accounts."""

    def __init__(
        self,
        session_factory: Callable[[], Any],
        lock_store: LockStore,
        idempotency_store: IdempotencyStore,
        *,
        lock_ttl: Optional[float] = None,
        ensure_lock_ttl: Optional[float] = None,
        lock_retry_attempts: Optional[int] = None,
        lock_retry_delay: Optional[float] = None,
        cache_ttl: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.lock_store = lock_store
        self.idempotency_store = idempotency_store
        self.lock_ttl = lock_ttl if lock_ttl is not None else settings.LOCK_TTL_SECONDS
        self.ensure_lock_ttl = ensure_lock_ttl if ensure_lock_ttl is not None else settings.ENSURE_LOCK_TTL_SECONDS
        self.lock_retry_attempts = lock_retry_attempts or settings.LOCK_RETRY_ATTEMPTS
        self.lock_retry_delay = lock_retry_delay if lock_retry_delay is not None else settings.LOCK_RETRY_DELAY
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.IDEMPOTENCY_TTL_SECONDS

    # ── Idempotency store access (errors degrade to a miss) ─────────

    async def _cache_get(self, key: str) -> Optional[dict]:
        try:
            return await self.idempotency_store.get(key)
        except Exception as e:
            logger.warning("IDEMPOTENCY_FAILED key=%s, executing directly: %s", key, e)
            return None

    async def _cache_put(self, key: str, value: dict) -> None:
        try:
            await self.idempotency_store.put(key, value, self.cache_ttl)
        except Exception as e:
            logger.warning("IDEMPOTENCY_STORE_FAILED key=%s: %s", key, e)

    async def _cache_invalidate(self, *keys: str) -> None:
        for key in keys:
            try:
                await self.idempotency_store.invalidate(key)
            except Exception as e:
                logger.warning("IDEMPOTENCY_INVALIDATE_FAILED key=%s: %s", key, e)

    # ── Create-or-get ────────────────────────────────────────────────

    async def create_or_get_storage_account(
        self,
        user_id: str,
        account: OAuthIdentity,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        *,
        force_create: bool = False,
        respect_disconnected: bool = True,
    ) -> ProvisioningResult:
        """Return the storage account for ``account``, creating it at most once.

        Never raises for expected conditions; the outcome is carried in
        ``ProvisioningResult.operation``.
        """
        storage_provider = normalize_provider(account.provider)
        if storage_provider is None:
            logger.warning(
                "INVALID_PROVIDER user=%s provider=%s", user_id, account.provider,
            )
            return ProvisioningResult(
                success=False,
                operation=ProvisioningOutcome.INVALID_PROVIDER,
                user_id=user_id,
                provider=account.provider,
                provider_account_id=account.provider_account_id,
                error=f"Unsupported provider: {account.provider}",
            )

        external_id = account.provider_account_id
        lock_key = f"storage-account:{user_id}:{storage_provider}:{external_id}"
        cache_key = storage_account_key(user_id, storage_provider, external_id)

        logger.info(
            "CREATE_OR_GET_START user=%s provider=%s account=%s force=%s respect_disconnected=%s",
            user_id, storage_provider, external_id, force_create, respect_disconnected,
        )

        try:
            async with hold_lock(
                self.lock_store, lock_key, self.lock_ttl,
                self.lock_retry_attempts, self.lock_retry_delay,
            ):
                cached = None if force_create else await self._cache_get(cache_key)
                if cached is not None:
                    result = ProvisioningResult.from_cache(cached)
                else:
                    result = await self._execute_creation(
                        user_id, storage_provider, external_id, email, display_name,
                        force_create=force_create, respect_disconnected=respect_disconnected,
                    )
                    if result.success:
                        await self._cache_put(cache_key, result.to_dict())
                    if result.operation in (ProvisioningOutcome.CREATED, ProvisioningOutcome.REACTIVATED):
                        await self._cache_invalidate(ensure_user_key(user_id))
        except LockAcquisitionError as e:
            logger.warning(
                "CREATE_OR_GET_LOCK_FAILED user=%s provider=%s account=%s: %s",
                user_id, storage_provider, external_id, e,
            )
            return ProvisioningResult(
                success=False,
                operation=ProvisioningOutcome.LOCK_FAILED,
                user_id=user_id,
                provider=storage_provider,
                provider_account_id=external_id,
                error=str(e),
            )

        logger.info(
            "CREATE_OR_GET_COMPLETE user=%s provider=%s account=%s operation=%s cached=%s",
            user_id, storage_provider, external_id, result.operation.value, result.cached,
        )
        return result

    async def _find_account(self, db, user_id: str, provider: str, external_id: str) -> Optional[StorageAccount]:
        result = await db.execute(
            select(StorageAccount).where(
                StorageAccount.user_id == user_id,
                StorageAccount.provider == provider,
                StorageAccount.provider_account_id == external_id,
            )
        )
        return result.scalar_one_or_none()

    async def _execute_creation(
        self,
        user_id: str,
        provider: str,
        external_id: str,
        email: Optional[str],
        display_name: Optional[str],
        *,
        force_create: bool,
        respect_disconnected: bool,
    ) -> ProvisioningResult:
        def outcome(operation: ProvisioningOutcome, account_id: Optional[str] = None,
                    error: Optional[str] = None) -> ProvisioningResult:
            return ProvisioningResult(
                success=error is None,
                operation=operation,
                user_id=user_id,
                provider=provider,
                provider_account_id=external_id,
                storage_account_id=account_id,
                error=error,
            )

        try:
            async with self.session_factory() as db:
                existing = await self._find_account(db, user_id, provider, external_id)
                if existing is not None:
                    logger.info(
                        "EXISTING_ACCOUNT_FOUND user=%s provider=%s id=%s status=%s",
                        user_id, provider, existing.id, existing.status,
                    )
                    if existing.status == StorageAccountStatus.DISCONNECTED.value:
                        if respect_disconnected and not force_create:
                            logger.info("RESPECTING_DISCONNECTED_STATUS id=%s", existing.id)
                            return outcome(ProvisioningOutcome.EXISTING_DISCONNECTED, existing.id)
                        if force_create:
                            existing.status = StorageAccountStatus.ACTIVE.value
                            existing.is_active = True
                            existing.last_error = None
                            existing.last_accessed_at = datetime.now(timezone.utc)
                            await db.commit()
                            logger.info("REACTIVATED_ACCOUNT id=%s", existing.id)
                            return outcome(ProvisioningOutcome.REACTIVATED, existing.id)
                    return outcome(ProvisioningOutcome.EXISTING_ACTIVE, existing.id)

                oauth = await db.execute(
                    select(OAuthAccount.id).where(
                        OAuthAccount.user_id == user_id,
                        OAuthAccount.provider.in_(OAUTH_PROVIDERS[provider]),
                        OAuthAccount.provider_account_id == external_id,
                    ).limit(1)
                )
                if oauth.scalar_one_or_none() is None:
                    logger.info(
                        "OAUTH_ACCOUNT_NOT_FOUND user=%s provider=%s account=%s",
                        user_id, provider, external_id,
                    )
                    return outcome(
                        ProvisioningOutcome.OAUTH_NOT_FOUND,
                        error=f"OAuth account not found for {provider}",
                    )

                new_account = StorageAccount(
                    user_id=user_id,
                    provider=provider,
                    provider_account_id=external_id,
                    display_name=display_name or email or f"{provider} Account",
                    email=email,
                    status=StorageAccountStatus.ACTIVE.value,
                    is_active=True,
                    last_accessed_at=datetime.now(timezone.utc),
                )
                db.add(new_account)
                try:
                    await db.commit()
                except IntegrityError:
                    # Another process inserted the same triple first
                    await db.rollback()
                    winner = await self._find_account(db, user_id, provider, external_id)
                    if winner is None:
                        raise
                    logger.info("CREATE_RACE_LOST user=%s provider=%s id=%s", user_id, provider, winner.id)
                    return outcome(ProvisioningOutcome.EXISTING_ACTIVE, winner.id)

                logger.info(
                    "CREATED_NEW_ACCOUNT user=%s provider=%s id=%s display_name=%s",
                    user_id, provider, new_account.id, new_account.display_name,
                )
                return outcome(ProvisioningOutcome.CREATED, new_account.id)
        except Exception as e:
            logger.error(
                "CREATION_FAILED user=%s provider=%s account=%s: %s",
                user_id, provider, external_id, e, exc_info=True,
            )
            return outcome(ProvisioningOutcome.FAILED, error=str(e) or type(e).__name__)

    # ── Per-user sweep ───────────────────────────────────────────────

    async def find_user(self, user_id: str) -> Optional[User]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(User).options(selectinload(User.accounts)).where(User.id == user_id)
            )
            return result.scalar_one_or_none()

    async def ensure_storage_accounts_for_user(
        self,
        user_id: str,
        *,
        force_create: bool = False,
        respect_disconnected: bool = True,
    ) -> EnsureResult:
        """Create-or-get a storage account for every supported OAuth account of a user."""
        lock_key = f"ensure-storage-accounts:{user_id}"
        cache_key = ensure_user_key(user_id)
        logger.info(
            "ENSURE_USER_START user=%s force=%s respect_disconnected=%s",
            user_id, force_create, respect_disconnected,
        )

        try:
            async with hold_lock(
                self.lock_store, lock_key, self.ensure_lock_ttl,
                self.lock_retry_attempts, self.lock_retry_delay,
            ):
                cached = None if force_create else await self._cache_get(cache_key)
                if cached is not None:
                    result = EnsureResult.from_cache(cached)
                else:
                    result = await self._ensure_user(user_id, force_create, respect_disconnected)
                    if result.success:
                        await self._cache_put(cache_key, result.to_dict())
        except LockAcquisitionError as e:
            logger.warning("ENSURE_USER_FAILED user=%s: %s", user_id, e)
            return EnsureResult(errors=[str(e)])

        logger.info(
            "ENSURE_USER_COMPLETE user=%s created=%d reactivated=%d validated=%d errors=%d",
            user_id, result.created, result.reactivated, result.validated, len(result.errors),
        )
        return result

    async def _ensure_user(self, user_id: str, force_create: bool, respect_disconnected: bool) -> EnsureResult:
        result = EnsureResult()
        user = await self.find_user(user_id)
        if user is None:
            result.errors.append("User not found")
            return result

        accounts = [a for a in user.accounts if normalize_provider(a.provider)]
        logger.info("USER_OAUTH_ACCOUNTS_FOUND user=%s count=%d", user_id, len(accounts))

        for oauth in accounts:
            outcome = await self.create_or_get_storage_account(
                user_id,
                OAuthIdentity(oauth.provider, oauth.provider_account_id),
                user.email,
                user.name,
                force_create=force_create,
                respect_disconnected=respect_disconnected,
            )
            result.details.append(outcome)
            if not outcome.success:
                result.errors.append(f"{oauth.provider}: {outcome.error or 'Unknown error'}")
            elif outcome.operation == ProvisioningOutcome.CREATED:
                result.created += 1
            elif outcome.operation == ProvisioningOutcome.REACTIVATED:
                result.reactivated += 1
            else:
                result.validated += 1
        return result

    # ── State management ─────────────────────────────────────────────

    async def list_accounts(self, user_id: Optional[str] = None) -> list[StorageAccount]:
        async with self.session_factory() as db:
            query = select(StorageAccount).order_by(StorageAccount.created_at, StorageAccount.id)
            if user_id is not None:
                query = query.where(StorageAccount.user_id == user_id)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def update_status(
        self,
        account_id: str,
        status: str | StorageAccountStatus,
        error: Optional[str] = None,
    ) -> StorageAccount:
        """Move an account to ``status``.

        Raises StorageAccountNotFoundError for unknown ids and
        InvalidTransitionError for transitions outside ALLOWED_TRANSITIONS.
        Setting the current status again is a no-op.
        """
        target = parse_status(status)
        async with self.session_factory() as db:
            account = await db.get(StorageAccount, account_id)
            if account is None:
                raise StorageAccountNotFoundError(f"Storage account {account_id} not found")
            if account.status == target.value:
                return account
            if not is_transition_allowed(account.status, target):
                raise InvalidTransitionError(account.status, target.value)

            previous = account.status
            account.status = target.value
            account.is_active = target == StorageAccountStatus.ACTIVE
            if target == StorageAccountStatus.ACTIVE:
                account.last_error = None
                account.last_accessed_at = datetime.now(timezone.utc)
            else:
                account.last_error = error
            await db.commit()
            await db.refresh(account)

        logger.info("STATUS_CHANGED id=%s %s -> %s", account_id, previous, target.value)
        await self._cache_invalidate(
            storage_account_key(account.user_id, account.provider, account.provider_account_id),
            ensure_user_key(account.user_id),
        )
        return account

    async def record_access(self, account_id: str) -> StorageAccount:
        """Stamp a successful provider access; clears ERROR back to ACTIVE."""
        async with self.session_factory() as db:
            account = await db.get(StorageAccount, account_id)
            if account is None:
                raise StorageAccountNotFoundError(f"Storage account {account_id} not found")
            if account.status != StorageAccountStatus.ERROR.value:
                account.last_accessed_at = datetime.now(timezone.utc)
                await db.commit()
                await db.refresh(account)
                return account
        return await self.update_status(account_id, StorageAccountStatus.ACTIVE)


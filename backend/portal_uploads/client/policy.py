"""Upload policy: single request or chunked, and with which limits.

The single-request ceiling depends on where the server is hosted. Hosted
serverless platforms cap request bodies (4 MB on hobby plans, 45 MB on pro),
local servers accept much more.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlparse

from portal_uploads.client.chunking import chunk_count as _chunk_count

logger = logging.getLogger(__name__)

MB = 1024 * 1024
DEFAULT_CHUNK_SIZE = 2 * MB
FALLBACK_MAX_SIZE = 4 * MB


class UploadTier(str, enum.Enum):
    LOCAL = "local"
    HOSTED_HOBBY = "hosted_hobby"
    HOSTED_PRO = "hosted_pro"
    HOSTED_UNKNOWN = "hosted_unknown"


SINGLE_UPLOAD_LIMITS = {
    UploadTier.LOCAL: 100 * MB,
    UploadTier.HOSTED_HOBBY: 4 * MB,
    UploadTier.HOSTED_PRO: 45 * MB,
    UploadTier.HOSTED_UNKNOWN: 4 * MB,
}

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}


def detect_tier(base_url: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> UploadTier:
    """Pick the hosting tier.

    Order: explicit UPLOAD_TIER, then the VERCEL / VERCEL_ENV variables a
    hosted server sees, then the hostname of ``base_url``.
    """
    environ = environ or {}
    override = (environ.get("UPLOAD_TIER") or "").strip().lower()
    if override:
        try:
            return UploadTier(override)
        except ValueError:
            logger.warning("Ignoring unknown UPLOAD_TIER=%r", override)

    if environ.get("VERCEL"):
        if environ.get("VERCEL_ENV") == "production":
            return UploadTier.HOSTED_PRO
        return UploadTier.HOSTED_HOBBY

    hostname = (urlparse(base_url).hostname or "") if base_url else ""
    if not hostname or hostname in _LOCAL_HOSTS or hostname.startswith("127."):
        return UploadTier.LOCAL
    if hostname.endswith("vercel.app") or hostname.endswith("vercel.com"):
        return UploadTier.HOSTED_HOBBY
    return UploadTier.HOSTED_UNKNOWN


@dataclass(frozen=True)
class UploadPolicy:
    single_upload_limit: int
    chunk_size: int = DEFAULT_CHUNK_SIZE
    fallback_max_size: int = FALLBACK_MAX_SIZE
    file_timeout: float = 120.0
    tier: UploadTier = UploadTier.HOSTED_UNKNOWN

    def should_chunk(self, size: int) -> bool:
        return size > self.single_upload_limit

    def chunk_count(self, size: int) -> int:
        return _chunk_count(size, self.chunk_size)

    def use_single_request(self, size: int) -> bool:
        """Small enough for one request and would not be split anyway."""
        return not self.should_chunk(size) and self.chunk_count(size) <= 1

    def fallback_eligible(self, size: int) -> bool:
        return size <= self.fallback_max_size

    @classmethod
    def for_tier(cls, tier: UploadTier, **overrides) -> "UploadPolicy":
        return cls(single_upload_limit=SINGLE_UPLOAD_LIMITS[tier], tier=tier, **overrides)

    @classmethod
    def for_environment(
        cls,
        base_url: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
        settings=None,
    ) -> "UploadPolicy":
        """Policy from application settings; ``environ`` overrides tier detection inputs."""
        if settings is None:
            from portal_uploads.config import settings
        if environ is None:
            environ = {
                "UPLOAD_TIER": settings.UPLOAD_TIER,
                "VERCEL": settings.VERCEL,
                "VERCEL_ENV": settings.VERCEL_ENV,
            }
        return cls.for_tier(
            detect_tier(base_url or settings.PUBLIC_BASE_URL, environ),
            chunk_size=settings.UPLOAD_CHUNK_SIZE,
            file_timeout=settings.UPLOAD_FILE_TIMEOUT,
        )

    def describe(self, size: int) -> dict:
        """Diagnostics for one file, logged before every upload."""
        return {
            "fileSize": format_file_size(size),
            "tier": self.tier.value,
            "singleUploadLimit": format_file_size(self.single_upload_limit),
            "shouldUseChunkedUpload": self.should_chunk(size),
            "chunkSize": format_file_size(self.chunk_size),
            "totalChunks": self.chunk_count(size),
        }


def format_file_size(num_bytes: int) -> str:
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


def friendly_error_message(error: str, file_size: int, policy: Optional[UploadPolicy] = None) -> str:
    """Map raw transport errors to something a person uploading a file can act on."""
    size_mb = round(file_size / MB)
    lowered = error.lower()
    if "413" in error or "request entity too large" in lowered or "payload too large" in lowered:
        if policy is not None:
            limit_mb = round(policy.single_upload_limit / MB)
            return (
                f"File too large ({size_mb}MB). Server limit is {limit_mb}MB. "
                "Please try a smaller file or contact support if this persists."
            )
        return f"File too large ({size_mb}MB). Please try a smaller file or contact support if this persists."
    if "timeout" in lowered or "timed out" in lowered:
        return (
            f"Upload timed out ({size_mb}MB file). The server may be overloaded. "
            "Try again later or with a smaller file."
        )
    if "401" in error or "403" in error:
        return "Authentication failed. Please refresh the page and try again."
    if "500" in error:
        return f"Server error while uploading {size_mb}MB file. Please try again or contact support if this persists."
    return error

"""Portal model - the upload destination a client file is sent to."""
from sqlalchemy import String, Boolean, BigInteger, JSON, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from portal_uploads.models.base import Base, IdMixin, TimestampMixin


class Portal(Base, IdMixin, TimestampMixin):
    __tablename__ = "portals"

    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    max_file_size: Mapped[int] = mapped_column(BigInteger, default=500 * 1024 * 1024)
    # Empty list means any type; entries may be exact ("application/pdf") or wildcards ("image/*")
    allowed_file_types: Mapped[list] = mapped_column(JSON, default=list)
    require_client_name: Mapped[bool] = mapped_column(Boolean, default=False)
    require_client_email: Mapped[bool] = mapped_column(Boolean, default=False)
    storage_provider: Mapped[str] = mapped_column(String(50), default="google_drive")

"""FileRecord model - a finalized upload (actual bytes on the filesystem)."""
from sqlalchemy import String, Text, BigInteger, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from portal_uploads.models.base import Base, IdMixin, TimestampMixin


class FileRecord(Base, IdMixin, TimestampMixin):
    __tablename__ = "files"

    portal_id: Mapped[str] = mapped_column(ForeignKey("portals.id", ondelete="CASCADE"), index=True)
    upload_id: Mapped[str | None] = mapped_column(String(36), nullable=True, unique=True)
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    storage_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    storage_provider: Mapped[str] = mapped_column(String(50), default="local")
    client_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    client_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    client_message: Mapped[str | None] = mapped_column(Text, nullable=True)

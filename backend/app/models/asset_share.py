import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.asset import utcnow


class AssetShare(Base):
    __tablename__ = "asset_shares"
    __table_args__ = (UniqueConstraint("asset_id", "grantee_id", name="uq_asset_share_grantee"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    asset_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("assets.id"), index=True)
    grantee_id: Mapped[str] = mapped_column(String(128), index=True)
    can_download: Mapped[bool] = mapped_column(Boolean, default=False)

    granted_by: Mapped[str] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

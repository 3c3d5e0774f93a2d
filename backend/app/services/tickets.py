from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.errors import BadRequest, CollaboratorError
from app.models.asset import Asset, AssetStatus, utcnow
from app.models.upload_ticket import UploadTicket
from app.services.sanitize import sanitize_filename

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadSlot:
    asset_id: uuid.UUID
    storage_path: str
    upload_url: str
    expires_at: datetime
    nonce: str


def build_storage_path(*, subject_id: str, asset_id: uuid.UUID, filename: str, now: datetime) -> str:
    return f"private/{subject_id}/{now.year:04d}/{now.month:02d}/{asset_id}-{filename}"


class TicketIssuer:
    def __init__(
        self,
        db: Session,
        storage,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.storage = storage
        self.settings = settings
        self.clock = clock

    def create_upload_slot(self, *, subject_id: str, filename: str, mime_type: str, size: int) -> UploadSlot:
        mime = str(mime_type or "").strip().lower()
        if mime not in self.settings.allowed_mimes:
            raise BadRequest("mime type not allowed", mime_type=mime_type)
        if int(size) <= 0 or int(size) > int(self.settings.max_upload_bytes):
            raise BadRequest("size out of range", size=int(size), max_bytes=int(self.settings.max_upload_bytes))

        safe = sanitize_filename(filename)
        now = self.clock()
        asset_id = uuid.uuid4()
        storage_path = build_storage_path(subject_id=subject_id, asset_id=asset_id, filename=safe, now=now)
        nonce = secrets.token_hex(16)
        ttl = int(self.settings.upload_ticket_ttl_seconds)
        expires_at = now + timedelta(seconds=ttl)

        # Signing is local; do it before writing so a signing failure leaves no rows behind.
        upload_url = self.storage.sign_upload_url(storage_path, ttl, content_type=mime)

        try:
            self.db.add(
                Asset(
                    id=asset_id,
                    owner_id=subject_id,
                    filename=safe,
                    mime_type=mime,
                    size_bytes=int(size),
                    storage_path=storage_path,
                    status=AssetStatus.uploading,
                    version=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            self.db.flush()
            self.db.add(
                UploadTicket(
                    asset_id=asset_id,
                    subject_id=subject_id,
                    nonce=nonce,
                    mime_type=mime,
                    size_bytes=int(size),
                    storage_path=storage_path,
                    expires_at=expires_at,
                    used=False,
                    created_at=now,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise CollaboratorError("failed to persist upload slot", asset_id=asset_id) from e

        log.info("upload slot issued: asset_id=%s subject=%s mime=%s size=%s", asset_id, subject_id, mime, size)
        return UploadSlot(
            asset_id=asset_id,
            storage_path=storage_path,
            upload_url=upload_url,
            expires_at=expires_at,
            nonce=nonce,
        )

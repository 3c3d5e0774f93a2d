from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.errors import (
    BadRequest,
    CollaboratorError,
    ContentIntegrityError,
    Forbidden,
    NotFound,
    VersionConflict,
)
from app.models.asset import Asset, AssetStatus, utcnow
from app.models.asset_share import AssetShare
from app.models.upload_ticket import UploadTicket
from app.services.access import can_read
from app.services.hasher import ContentHasher, ObjectDigest, ObjectMissing
from app.services.sanitize import sanitize_filename
from app.services.versioning import apply_versioned_delete, apply_versioned_update, as_utc

log = logging.getLogger(__name__)


def first_failed_check(
    *,
    ticket: UploadTicket,
    digest: ObjectDigest,
    client_hash: str,
    allowed_mimes: frozenset[str],
) -> str | None:
    """Return the name of the first integrity check that fails, or None.

    Order matters: size, then declared mime, then hash.
    """
    if int(digest.size) != int(ticket.size_bytes):
        return "size_mismatch"
    # Only the ticket's declared mime is re-checked; the object is not sniffed.
    if str(ticket.mime_type or "").lower() not in allowed_mimes:
        return "mime_not_allowed"
    if digest.sha256.lower() != str(client_hash or "").strip().lower():
        return "hash_mismatch"
    return None


class AssetService:
    """Owns asset status transitions and every versioned owner mutation."""

    def __init__(
        self,
        db: Session,
        settings: Settings,
        *,
        hasher: ContentHasher | None = None,
        storage=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.settings = settings
        self.hasher = hasher
        self.storage = storage
        self.clock = clock

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise CollaboratorError("failed to persist change") from e

    def _load_owned(self, *, subject_id: str, asset_id: uuid.UUID) -> Asset:
        asset = self.db.get(Asset, asset_id)
        if asset is None:
            raise NotFound("asset not found", asset_id=asset_id)
        if asset.owner_id != subject_id:
            raise Forbidden(asset_id=asset_id)
        return asset

    def _consume_ticket(self, asset_id: uuid.UUID) -> None:
        # One-way latch: only an unused ticket can be consumed.
        res = self.db.execute(
            update(UploadTicket)
            .where(UploadTicket.asset_id == asset_id, UploadTicket.used.is_(False))
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        if int(res.rowcount or 0) != 1:
            raise VersionConflict("upload ticket already consumed", asset_id=asset_id)

    def get(self, *, subject_id: str, asset_id: uuid.UUID) -> Asset:
        asset = self.db.get(Asset, asset_id)
        if asset is None:
            raise NotFound("asset not found", asset_id=asset_id)
        if not can_read(self.db, subject_id=subject_id, asset=asset):
            raise Forbidden(asset_id=asset_id)
        return asset

    def finalize(
        self,
        *,
        subject_id: str,
        asset_id: uuid.UUID,
        client_hash: str,
        expected_version: int,
    ) -> Asset:
        ticket = self.db.get(UploadTicket, asset_id)
        if ticket is None:
            raise NotFound("upload ticket not found", asset_id=asset_id)
        if ticket.subject_id != subject_id:
            raise Forbidden(asset_id=asset_id)

        if ticket.used:
            asset = self.db.get(Asset, asset_id)
            if asset is None:
                raise NotFound("asset not found", asset_id=asset_id)
            return asset

        now = self.clock()
        if now > as_utc(ticket.expires_at):
            raise BadRequest("upload ticket expired", asset_id=asset_id)

        if self.hasher is None:
            raise CollaboratorError("content hasher not configured")
        try:
            digest = self.hasher.hash(ticket.storage_path)
        except ObjectMissing as e:
            # Nothing arrived yet: leave the asset uploading and the ticket unused.
            raise ContentIntegrityError(
                "uploaded object not found",
                asset_id=asset_id,
                check="object_missing",
            ) from e

        failed = first_failed_check(
            ticket=ticket,
            digest=digest,
            client_hash=client_hash,
            allowed_mimes=self.settings.allowed_mimes,
        )
        if failed is not None:
            try:
                apply_versioned_update(
                    self.db,
                    asset_id=asset_id,
                    expected_version=expected_version,
                    now=now,
                    status=AssetStatus.corrupt,
                )
                self._consume_ticket(asset_id)
            except VersionConflict:
                self.db.rollback()
                raise
            self._commit()
            log.warning("finalize corrupt: asset_id=%s check=%s", asset_id, failed)
            raise ContentIntegrityError(asset_id=asset_id, check=failed)

        try:
            asset = apply_versioned_update(
                self.db,
                asset_id=asset_id,
                expected_version=expected_version,
                now=now,
                status=AssetStatus.ready,
                sha256=digest.sha256,
            )
            self._consume_ticket(asset_id)
        except VersionConflict:
            self.db.rollback()
            raise
        self._commit()
        log.info("finalize ready: asset_id=%s version=%s", asset_id, asset.version)
        return asset

    def rename(self, *, subject_id: str, asset_id: uuid.UUID, new_filename: str, expected_version: int) -> Asset:
        self._load_owned(subject_id=subject_id, asset_id=asset_id)
        try:
            asset = apply_versioned_update(
                self.db,
                asset_id=asset_id,
                expected_version=expected_version,
                now=self.clock(),
                filename=sanitize_filename(new_filename),
            )
        except VersionConflict:
            self.db.rollback()
            raise
        self._commit()
        return asset

    def share(
        self,
        *,
        subject_id: str,
        asset_id: uuid.UUID,
        grantee_id: str,
        can_download: bool,
        expected_version: int,
    ) -> Asset:
        self._load_owned(subject_id=subject_id, asset_id=asset_id)
        grantee_id = str(grantee_id or "").strip()
        if not grantee_id or grantee_id == subject_id:
            raise BadRequest("invalid grantee", asset_id=asset_id)

        try:
            asset = apply_versioned_update(
                self.db,
                asset_id=asset_id,
                expected_version=expected_version,
                now=self.clock(),
            )
        except VersionConflict:
            self.db.rollback()
            raise

        share = self.db.scalar(
            select(AssetShare).where(AssetShare.asset_id == asset_id, AssetShare.grantee_id == grantee_id)
        )
        if share is None:
            self.db.add(
                AssetShare(
                    asset_id=asset_id,
                    grantee_id=grantee_id,
                    can_download=bool(can_download),
                    granted_by=subject_id,
                )
            )
        else:
            share.can_download = bool(can_download)
        self._commit()
        return asset

    def revoke_share(self, *, subject_id: str, asset_id: uuid.UUID, grantee_id: str, expected_version: int) -> Asset:
        self._load_owned(subject_id=subject_id, asset_id=asset_id)
        share = self.db.scalar(
            select(AssetShare).where(AssetShare.asset_id == asset_id, AssetShare.grantee_id == grantee_id)
        )
        if share is None:
            raise NotFound("share not found", asset_id=asset_id, grantee_id=grantee_id)

        try:
            asset = apply_versioned_update(
                self.db,
                asset_id=asset_id,
                expected_version=expected_version,
                now=self.clock(),
            )
        except VersionConflict:
            self.db.rollback()
            raise
        self.db.delete(share)
        self._commit()
        return asset

    def delete(self, *, subject_id: str, asset_id: uuid.UUID, expected_version: int) -> None:
        asset = self._load_owned(subject_id=subject_id, asset_id=asset_id)
        storage_path = asset.storage_path
        try:
            self.db.execute(delete(UploadTicket).where(UploadTicket.asset_id == asset_id))
            self.db.execute(delete(AssetShare).where(AssetShare.asset_id == asset_id))
            apply_versioned_delete(self.db, asset_id=asset_id, expected_version=expected_version)
        except VersionConflict:
            self.db.rollback()
            raise
        self._commit()
        self.db.expunge_all()
        log.info("asset deleted: asset_id=%s", asset_id)

        if self.storage is not None:
            try:
                self.storage.delete_object(storage_path)
            except Exception:
                log.exception("delete_object failed: asset_id=%s path=%s", asset_id, storage_path)

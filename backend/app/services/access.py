from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.audit_log import record_download
from app.core.config import Settings
from app.core.errors import BadRequest, Forbidden, NotFound
from app.models.asset import Asset, AssetStatus, utcnow
from app.models.asset_share import AssetShare

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class DownloadLink:
    url: str
    expires_at: datetime


def _share_for(db: Session, *, asset_id: uuid.UUID, subject_id: str) -> AssetShare | None:
    return db.scalar(
        select(AssetShare).where(AssetShare.asset_id == asset_id, AssetShare.grantee_id == subject_id)
    )


def authorize_download(db: Session, *, subject_id: str, asset: Asset) -> AccessDecision:
    if asset.owner_id == subject_id:
        return AccessDecision(True)
    share = _share_for(db, asset_id=asset.id, subject_id=subject_id)
    if share is None:
        return AccessDecision(False, "no_share")
    if not share.can_download:
        return AccessDecision(False, "download_not_permitted")
    return AccessDecision(True)


def can_read(db: Session, *, subject_id: str, asset: Asset) -> bool:
    if asset.owner_id == subject_id:
        return True
    return _share_for(db, asset_id=asset.id, subject_id=subject_id) is not None


class DownloadService:
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

    def issue_download_url(
        self,
        *,
        subject_id: str,
        asset_id: uuid.UUID,
        request_id: str | None = None,
        ip: str | None = None,
    ) -> DownloadLink:
        asset = self.db.get(Asset, asset_id)
        if asset is None:
            raise NotFound("asset not found", asset_id=asset_id)

        # Authorization before status so unauthorized callers learn nothing about state.
        decision = authorize_download(self.db, subject_id=subject_id, asset=asset)
        if not decision.allowed:
            raise Forbidden(asset_id=asset_id, reason=decision.reason)
        if asset.status != AssetStatus.ready:
            raise BadRequest("asset is not ready", asset_id=asset_id, status=asset.status.value)

        ttl = self.settings.download_ttl
        url = self.storage.sign_download_url(asset.storage_path, ttl)
        now = self.clock()

        try:
            record_download(self.db, asset_id=asset_id, subject_id=subject_id, request_id=request_id, ip=ip, now=now)
            self.db.commit()
        except SQLAlchemyError:
            # The URL is already minted; a lost audit row must not fail the request.
            self.db.rollback()
            log.exception("download audit insert failed: asset_id=%s subject=%s", asset_id, subject_id)

        log.info("download url issued: asset_id=%s subject=%s ttl=%s", asset_id, subject_id, ttl)
        return DownloadLink(url=url, expires_at=now + timedelta(seconds=ttl))

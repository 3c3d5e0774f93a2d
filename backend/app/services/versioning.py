from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from app.core.errors import VersionConflict
from app.models.asset import Asset


def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def apply_versioned_update(
    db: Session,
    *,
    asset_id: uuid.UUID,
    expected_version: int,
    now: datetime,
    **fields: object,
) -> Asset:
    """Compare-and-swap `fields` onto the asset at `expected_version`.

    The row is only touched when its version still equals `expected_version`;
    the new version is exactly `expected_version + 1`. Zero affected rows
    raises VersionConflict. Does not commit: callers bundle other writes into
    the same transaction and commit (or roll back) themselves.
    """
    res = db.execute(
        update(Asset)
        .where(Asset.id == asset_id, Asset.version == int(expected_version))
        .values(version=int(expected_version) + 1, updated_at=now, **fields)
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        raise VersionConflict(asset_id=asset_id, expected_version=int(expected_version))

    asset = db.get(Asset, asset_id, populate_existing=True)
    if asset is None:
        raise VersionConflict(asset_id=asset_id, expected_version=int(expected_version))
    return asset


def apply_versioned_delete(db: Session, *, asset_id: uuid.UUID, expected_version: int) -> None:
    res = db.execute(
        delete(Asset)
        .where(Asset.id == asset_id, Asset.version == int(expected_version))
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        raise VersionConflict(asset_id=asset_id, expected_version=int(expected_version))

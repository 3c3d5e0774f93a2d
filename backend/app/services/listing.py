from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from app.core.errors import BadRequest
from app.models.asset import Asset
from app.models.asset_share import AssetShare
from app.services.versioning import as_utc

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class AssetEdge:
    cursor: str
    node: Asset


@dataclass(frozen=True)
class AssetPage:
    edges: list[AssetEdge]
    end_cursor: str | None
    has_next_page: bool


def encode_cursor(asset: Asset) -> str:
    raw = f"{as_utc(asset.created_at).isoformat()}|{asset.id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, uuid.UUID]:
    try:
        raw = base64.urlsafe_b64decode(str(cursor).encode("ascii")).decode("utf-8")
        ts, _, aid = raw.partition("|")
        return as_utc(datetime.fromisoformat(ts)), uuid.UUID(aid)
    except (ValueError, UnicodeError) as e:
        raise BadRequest("invalid cursor") from e


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def list_my_assets(
    db: Session,
    *,
    subject_id: str,
    after: str | None = None,
    first: int = DEFAULT_PAGE_SIZE,
    q: str | None = None,
) -> AssetPage:
    """Assets owned by or shared with `subject_id`, newest first."""
    limit = max(1, min(int(first or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE))

    shared_ids = select(AssetShare.asset_id).where(AssetShare.grantee_id == subject_id)
    stmt = select(Asset).where(or_(Asset.owner_id == subject_id, Asset.id.in_(shared_ids)))

    text = str(q or "").strip()
    if text:
        stmt = stmt.where(func.lower(Asset.filename).like(f"%{_escape_like(text.lower())}%", escape="\\"))

    if after:
        ts, aid = decode_cursor(after)
        stmt = stmt.where(or_(Asset.created_at < ts, and_(Asset.created_at == ts, Asset.id < aid)))

    rows = list(db.scalars(stmt.order_by(Asset.created_at.desc(), Asset.id.desc()).limit(limit + 1)))
    has_next = len(rows) > limit
    rows = rows[:limit]

    edges = [AssetEdge(cursor=encode_cursor(a), node=a) for a in rows]
    return AssetPage(
        edges=edges,
        end_cursor=edges[-1].cursor if edges else None,
        has_next_page=has_next,
    )

from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import Request
from sqlalchemy.orm import Session

from app.models.download_audit import DownloadAudit


def request_id(request: Request) -> str | None:
    rid = getattr(getattr(request, "state", None), "request_id", None)
    rid = str(rid or "").strip()
    return rid or None


def client_ip(request: Request, *, trust_proxy_headers: bool = False) -> str | None:
    if trust_proxy_headers:
        fwd = str(request.headers.get("forwarded") or "").strip()
        if fwd:
            # Forwarded: for=1.2.3.4;proto=https;host=...
            for part in (p.strip() for p in fwd.split(";")):
                if part.lower().startswith("for="):
                    v = part.split("=", 1)[1].strip().strip('"')
                    if v.startswith("[") and "]" in v:
                        v = v[1 : v.index("]")]
                    elif v.count(":") == 1:
                        v = v.split(":", 1)[0]
                    if v:
                        return v

        xri = str(request.headers.get("x-real-ip") or "").strip()
        if xri:
            return xri

        xff = str(request.headers.get("x-forwarded-for") or "")
        ip = xff.split(",")[0].strip()
        if ip:
            return ip
    if request.client and request.client.host:
        return request.client.host
    return None


def record_download(
    db: Session,
    *,
    asset_id: uuid.UUID,
    subject_id: str,
    request_id: str | None = None,
    ip: str | None = None,
    now: datetime | None = None,
) -> None:
    """Append one DownloadAudit row. Rows are never updated or deleted."""
    row = DownloadAudit(asset_id=asset_id, subject_id=subject_id, request_id=request_id, ip=ip)
    if now is not None:
        row.created_at = now
    db.add(row)

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.db.session import get_db
from app.services.access import DownloadService
from app.services.assets import AssetService
from app.services.tickets import TicketIssuer


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_current_subject(request: Request) -> str:
    """Resolve the bearer credential to a subject id; every route depends on this."""
    resolver = request.app.state.identity
    subject_id = resolver.resolve(request.headers.get("authorization"))
    request.state.user_id = subject_id
    return subject_id


def get_ticket_issuer(request: Request, db: Session = Depends(get_db)) -> TicketIssuer:
    st = request.app.state
    return TicketIssuer(db, st.storage, st.settings, clock=st.clock)


def get_asset_service(request: Request, db: Session = Depends(get_db)) -> AssetService:
    st = request.app.state
    return AssetService(db, st.settings, hasher=st.hasher, storage=st.storage, clock=st.clock)


def get_download_service(request: Request, db: Session = Depends(get_db)) -> DownloadService:
    st = request.app.state
    return DownloadService(db, st.storage, st.settings, clock=st.clock)


def require_hasher_secret(request: Request) -> None:
    secret = str(request.app.state.settings.hasher_secret or "").strip()
    if not secret:
        raise HTTPException(status_code=404, detail="not found")

    provided = str(request.headers.get("x-hasher-secret") or "").strip()
    if not provided or not hmac.compare_digest(provided, secret):
        raise HTTPException(status_code=403, detail="forbidden")

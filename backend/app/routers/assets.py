from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from app.core.audit_log import client_ip, request_id
from app.core.rate_limit import rate_limit
from app.core.security import (
    get_asset_service,
    get_current_subject,
    get_download_service,
    get_ticket_issuer,
)
from app.db.session import get_db
from app.schemas.asset import (
    AssetConnection,
    AssetEdgeOut,
    AssetOut,
    DownloadUrlResponse,
    FinalizeRequest,
    PageInfo,
    RenameRequest,
    ShareRequest,
    UploadSlotRequest,
    UploadSlotResponse,
)
from app.services.access import DownloadService
from app.services.assets import AssetService
from app.services.listing import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, list_my_assets
from app.services.tickets import TicketIssuer

router = APIRouter(prefix="/assets", tags=["assets"])


@router.get("", response_model=AssetConnection)
def my_assets(
    subject_id: str = Depends(get_current_subject),
    db: Session = Depends(get_db),
    after: str | None = Query(default=None),
    first: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    q: str | None = Query(default=None, max_length=200),
):
    page = list_my_assets(db, subject_id=subject_id, after=after, first=first, q=q)
    return AssetConnection(
        edges=[AssetEdgeOut(cursor=e.cursor, node=AssetOut.from_model(e.node)) for e in page.edges],
        page_info=PageInfo(end_cursor=page.end_cursor, has_next_page=page.has_next_page),
    )


@router.post("/upload-slot", response_model=UploadSlotResponse)
def create_upload_slot(
    body: UploadSlotRequest,
    subject_id: str = Depends(get_current_subject),
    issuer: TicketIssuer = Depends(get_ticket_issuer),
    _: object = rate_limit(key_prefix="asset_upload_slot", setting="rate_limit_upload_per_minute"),
):
    slot = issuer.create_upload_slot(
        subject_id=subject_id,
        filename=body.filename,
        mime_type=body.mime_type,
        size=body.size,
    )
    return UploadSlotResponse(
        asset_id=str(slot.asset_id),
        storage_path=slot.storage_path,
        upload_url=slot.upload_url,
        expires_at=slot.expires_at,
        nonce=slot.nonce,
    )


@router.get("/{asset_id}", response_model=AssetOut)
def get_asset(
    asset_id: uuid.UUID,
    subject_id: str = Depends(get_current_subject),
    svc: AssetService = Depends(get_asset_service),
):
    return AssetOut.from_model(svc.get(subject_id=subject_id, asset_id=asset_id))


@router.post("/{asset_id}/finalize", response_model=AssetOut)
def finalize_upload(
    asset_id: uuid.UUID,
    body: FinalizeRequest,
    subject_id: str = Depends(get_current_subject),
    svc: AssetService = Depends(get_asset_service),
    _: object = rate_limit(key_prefix="asset_finalize", setting="rate_limit_upload_per_minute"),
):
    asset = svc.finalize(
        subject_id=subject_id,
        asset_id=asset_id,
        client_hash=body.client_sha256,
        expected_version=body.expected_version,
    )
    return AssetOut.from_model(asset)


@router.patch("/{asset_id}", response_model=AssetOut)
def rename_asset(
    asset_id: uuid.UUID,
    body: RenameRequest,
    subject_id: str = Depends(get_current_subject),
    svc: AssetService = Depends(get_asset_service),
):
    asset = svc.rename(
        subject_id=subject_id,
        asset_id=asset_id,
        new_filename=body.filename,
        expected_version=body.expected_version,
    )
    return AssetOut.from_model(asset)


@router.put("/{asset_id}/shares/{grantee_id}", response_model=AssetOut)
def share_asset(
    asset_id: uuid.UUID,
    grantee_id: str,
    body: ShareRequest,
    subject_id: str = Depends(get_current_subject),
    svc: AssetService = Depends(get_asset_service),
):
    asset = svc.share(
        subject_id=subject_id,
        asset_id=asset_id,
        grantee_id=grantee_id,
        can_download=body.can_download,
        expected_version=body.expected_version,
    )
    return AssetOut.from_model(asset)


@router.delete("/{asset_id}/shares/{grantee_id}", response_model=AssetOut)
def revoke_share(
    asset_id: uuid.UUID,
    grantee_id: str,
    expected_version: int = Query(ge=0),
    subject_id: str = Depends(get_current_subject),
    svc: AssetService = Depends(get_asset_service),
):
    asset = svc.revoke_share(
        subject_id=subject_id,
        asset_id=asset_id,
        grantee_id=grantee_id,
        expected_version=expected_version,
    )
    return AssetOut.from_model(asset)


@router.delete("/{asset_id}", status_code=204)
def delete_asset(
    asset_id: uuid.UUID,
    expected_version: int = Query(ge=0),
    subject_id: str = Depends(get_current_subject),
    svc: AssetService = Depends(get_asset_service),
):
    svc.delete(subject_id=subject_id, asset_id=asset_id, expected_version=expected_version)
    return Response(status_code=204)


@router.get("/{asset_id}/download-url", response_model=DownloadUrlResponse)
def get_download_url(
    request: Request,
    asset_id: uuid.UUID,
    subject_id: str = Depends(get_current_subject),
    svc: DownloadService = Depends(get_download_service),
    _: object = rate_limit(key_prefix="asset_download_url", setting="rate_limit_download_per_minute"),
):
    link = svc.issue_download_url(
        subject_id=subject_id,
        asset_id=asset_id,
        request_id=request_id(request),
        ip=client_ip(request, trust_proxy_headers=bool(request.app.state.settings.trust_proxy_headers)),
    )
    return DownloadUrlResponse(url=link.url, expires_at=link.expires_at)

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from app.models.asset import Asset
from app.services.versioning import as_utc


class UploadSlotRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=1024)
    mime_type: str = Field(min_length=1, max_length=200)
    size: int = Field(gt=0)


class UploadSlotResponse(BaseModel):
    asset_id: str
    storage_path: str
    upload_url: str
    expires_at: datetime
    nonce: str


class FinalizeRequest(BaseModel):
    client_sha256: str = Field(pattern=r"^[0-9a-fA-F]{64}$")
    expected_version: int = Field(ge=0)


class RenameRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=1024)
    expected_version: int = Field(ge=0)


class ShareRequest(BaseModel):
    can_download: bool = False
    expected_version: int = Field(ge=0)


class AssetOut(BaseModel):
    id: str
    owner_id: str
    filename: str
    mime_type: str
    size_bytes: int
    sha256: str | None
    status: str
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, asset: Asset) -> AssetOut:
        return cls(
            id=str(asset.id),
            owner_id=asset.owner_id,
            filename=asset.filename,
            mime_type=asset.mime_type,
            size_bytes=int(asset.size_bytes),
            sha256=asset.sha256,
            status=asset.status.value,
            version=int(asset.version),
            created_at=as_utc(asset.created_at),
            updated_at=as_utc(asset.updated_at),
        )


class AssetEdgeOut(BaseModel):
    cursor: str
    node: AssetOut


class PageInfo(BaseModel):
    end_cursor: str | None
    has_next_page: bool


class AssetConnection(BaseModel):
    edges: list[AssetEdgeOut]
    page_info: PageInfo


class DownloadUrlResponse(BaseModel):
    url: str
    expires_at: datetime


class HashObjectRequest(BaseModel):
    path: str = Field(min_length=1, max_length=1000)


class HashObjectResponse(BaseModel):
    sha256: str
    size: int

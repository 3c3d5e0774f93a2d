from app.models.asset import Asset, AssetStatus
from app.models.asset_share import AssetShare
from app.models.download_audit import DownloadAudit
from app.models.upload_ticket import UploadTicket

__all__ = [
    "Asset",
    "AssetStatus",
    "AssetShare",
    "DownloadAudit",
    "UploadTicket",
]

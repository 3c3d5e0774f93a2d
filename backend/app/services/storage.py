from __future__ import annotations

import hashlib
import logging

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import Settings
from app.core.errors import CollaboratorError
from app.services.hasher import ObjectDigest, ObjectMissing

log = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}
_CHUNK_SIZE = 1024 * 1024


def get_s3_client(settings: Settings, *, endpoint_url: str | None = None):
    ep = (endpoint_url or "").strip() or None
    # For AWS S3, endpoint_url must be None.
    # For S3-compatible providers (MinIO/R2), endpoint_url is required.
    return boto3.client(
        "s3",
        endpoint_url=ep or (str(settings.s3_endpoint_url or "").strip() or None),
        aws_access_key_id=settings.s3_access_key_id,
        aws_secret_access_key=settings.s3_secret_access_key,
        region_name=settings.s3_region_name,
        config=Config(
            signature_version="s3v4",
            connect_timeout=float(settings.s3_connect_timeout_seconds),
            read_timeout=float(settings.s3_read_timeout_seconds),
            retries={
                "max_attempts": int(settings.s3_max_attempts),
                "mode": "standard",
            },
            max_pool_connections=int(settings.s3_max_pool_connections),
            s3={"addressing_style": str(settings.s3_addressing_style or "path")},
        ),
    )


class S3Storage:
    """Object storage collaborator backed by an S3-compatible bucket."""

    def __init__(self, settings: Settings, *, client=None, presign_client=None) -> None:
        self.bucket = settings.s3_bucket
        self._settings = settings
        self._client = client or get_s3_client(settings)
        if presign_client is None:
            # Presigning does not contact S3; the endpoint only affects the signed host.
            pub = (settings.s3_public_endpoint_url or "").strip()
            presign_client = get_s3_client(settings, endpoint_url=pub or settings.s3_endpoint_url)
        self._presign = presign_client

    def sign_upload_url(self, path: str, ttl_seconds: int, *, content_type: str | None = None) -> str:
        params: dict[str, object] = {"Bucket": self.bucket, "Key": path}
        if content_type:
            params["ContentType"] = content_type
        try:
            return self._presign.generate_presigned_url("put_object", Params=params, ExpiresIn=int(ttl_seconds))
        except (BotoCoreError, ClientError) as e:
            raise CollaboratorError("failed to sign upload url", storage_path=path) from e

    def sign_download_url(self, path: str, ttl_seconds: int) -> str:
        try:
            return self._presign.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=int(ttl_seconds),
            )
        except (BotoCoreError, ClientError) as e:
            raise CollaboratorError("failed to sign download url", storage_path=path) from e

    def hash_object(self, path: str) -> ObjectDigest:
        """Stream the object and return its sha256 and byte size."""
        try:
            resp = self._client.get_object(Bucket=self.bucket, Key=path)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code") or "")
            if code in _MISSING_CODES:
                raise ObjectMissing(path) from e
            raise CollaboratorError("object storage read failed", storage_path=path) from e
        except BotoCoreError as e:
            raise CollaboratorError("object storage unreachable", storage_path=path) from e

        h = hashlib.sha256()
        size = 0
        body = resp["Body"]
        try:
            for chunk in body.iter_chunks(chunk_size=_CHUNK_SIZE):
                if chunk:
                    size += len(chunk)
                    h.update(chunk)
        except (BotoCoreError, ClientError) as e:
            raise CollaboratorError("object storage read failed", storage_path=path) from e
        finally:
            body.close()
        return ObjectDigest(sha256=h.hexdigest(), size=size)

    def delete_object(self, path: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as e:
            raise CollaboratorError("object storage delete failed", storage_path=path) from e

    def ping(self) -> None:
        self._client.head_bucket(Bucket=self.bucket)

    def ensure_bucket_exists(self) -> None:
        try:
            self._client.head_bucket(Bucket=self.bucket)
            return
        except ClientError:
            # In production we should NOT auto-create buckets.
            if self._settings.is_prod:
                raise

        region = str(self._settings.s3_region_name or "").strip() or "us-east-1"
        is_aws = not str(self._settings.s3_endpoint_url or "").strip()
        if is_aws and region != "us-east-1":
            self._client.create_bucket(
                Bucket=self.bucket,
                CreateBucketConfiguration={"LocationConstraint": region},
            )
        else:
            self._client.create_bucket(Bucket=self.bucket)
        log.info("created bucket %s", self.bucket)

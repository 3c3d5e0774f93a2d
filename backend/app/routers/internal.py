from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from app.core.security import require_hasher_secret
from app.schemas.asset import HashObjectRequest, HashObjectResponse
from app.services.hasher import ObjectMissing

router = APIRouter(prefix="/internal", tags=["internal"])


@router.post("/hash-object", response_model=HashObjectResponse, dependencies=[Depends(require_hasher_secret)])
def hash_object(request: Request, body: HashObjectRequest):
    """Networked content hasher: streams the stored object and reports its sha256 and size."""
    try:
        digest = request.app.state.storage.hash_object(body.path)
    except ObjectMissing as e:
        raise HTTPException(status_code=404, detail="object not found") from e
    return HashObjectResponse(sha256=digest.sha256, size=digest.size)

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import text

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/health/live")
def live():
    return {"status": "live"}


@router.get("/health/ready")
def ready(request: Request):
    st = request.app.state
    try:
        with st.session_factory() as db:
            db.execute(text("SELECT 1"))
    except Exception as e:
        raise HTTPException(status_code=503, detail="db not ready") from e

    try:
        st.redis.ping()
    except Exception as e:
        raise HTTPException(status_code=503, detail="redis not ready") from e

    try:
        st.storage.ping()
    except Exception as e:
        raise HTTPException(status_code=503, detail="storage not ready") from e

    return {"status": "ready"}

import json
import logging
import time
import uuid
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.audit_log import request_id as _request_id
from app.core.config import Settings, check_production_settings
from app.core.config import settings as default_settings
from app.core.errors import AppError
from app.core.redis_client import get_redis
from app.db.session import make_engine, make_session_factory
from app.models.asset import utcnow
from app.routers import assets, health, internal
from app.services.hasher import HttpContentHasher, StorageContentHasher
from app.services.identity import IdentityResolver, build_identity_provider
from app.services.storage import S3Storage


def _build_hasher(settings: Settings, storage):
    url = (settings.content_hasher_url or "").strip()
    if url:
        return HttpContentHasher(
            url,
            secret=settings.hasher_secret,
            timeout=httpx.Timeout(
                connect=float(settings.hasher_timeout_connect),
                read=float(settings.hasher_timeout_read),
                write=10.0,
                pool=float(settings.hasher_timeout_connect),
            ),
        )
    return StorageContentHasher(storage)


def create_app(
    settings: Settings | None = None,
    *,
    session_factory=None,
    storage=None,
    hasher=None,
    identity: IdentityResolver | None = None,
    redis_client=None,
    clock=None,
) -> FastAPI:
    """Build the API with explicitly constructed collaborators.

    Anything not passed in is built from `settings`; tests pass fakes.
    """
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    settings = settings or default_settings
    check_production_settings(settings)

    app = FastAPI(title="Asset Vault API", version="1.0.0")
    logger = logging.getLogger("assetvault")
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)

    if session_factory is None:
        session_factory = make_session_factory(make_engine(settings.database_url))
    if storage is None:
        storage = S3Storage(settings)
    if hasher is None:
        hasher = _build_hasher(settings, storage)
    if identity is None:
        identity = IdentityResolver(build_identity_provider(settings))
    if redis_client is None:
        redis_client = get_redis(settings.redis_url)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.storage = storage
    app.state.hasher = hasher
    app.state.identity = identity
    app.state.redis = redis_client
    app.state.clock = clock or utcnow

    allow_origins = [o.strip() for o in str(settings.cors_allow_origins or "").split(",") if o.strip()]
    if "*" in allow_origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not include '*' when allow_credentials=true")

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        t0 = time.perf_counter()
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        status_code: int | None = None
        try:
            response = await call_next(request)
            status_code = int(getattr(response, "status_code", 0) or 0)
        except Exception:
            status_code = 500
            raise
        finally:
            path = request.url.path
            if not path.startswith("/health"):
                logger.info(
                    json.dumps(
                        {
                            "ts": datetime.now(timezone.utc).isoformat(),
                            "rid": rid,
                            "user_id": getattr(request.state, "user_id", None),
                            "method": request.method,
                            "path": path,
                            "status": status_code,
                            "duration_ms": int((time.perf_counter() - t0) * 1000),
                        },
                        ensure_ascii=False,
                    )
                )
        response.headers["X-Request-ID"] = rid
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
        if settings.is_prod:
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        payload = exc.to_payload()
        payload["request_id"] = _request_id(request)
        if exc.status_code >= 500:
            logger.warning("%s: %s %s", exc.error_code, exc.message, exc.context)
        return JSONResponse(status_code=int(exc.status_code), content=payload)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in e.get("loc", ())) for e in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={
                "ok": False,
                "error_code": "bad_request",
                "error_message": "invalid request",
                "context": {"fields": fields},
                "request_id": _request_id(request),
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        code = int(exc.status_code)
        error_code = {
            401: "unauthenticated",
            403: "forbidden",
            404: "not_found",
            429: "rate_limited",
            503: "unavailable",
        }.get(code, "http_error")
        return JSONResponse(
            status_code=code,
            content={
                "ok": False,
                "error_code": error_code,
                "error_message": str(exc.detail or "request failed"),
                "request_id": _request_id(request),
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        rid = _request_id(request)
        logger.exception("unhandled exception", extra={"rid": rid})
        return JSONResponse(
            status_code=500,
            content={
                "ok": False,
                "error_code": "internal_error",
                "error_message": "internal server error",
                "request_id": rid,
            },
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["authorization", "content-type", "x-request-id"],
    )

    app.include_router(health.router)
    app.include_router(assets.router)
    app.include_router(internal.router)

    @app.on_event("startup")
    async def _startup_tasks() -> None:
        if bool(settings.s3_ensure_bucket_on_startup):
            storage.ensure_bucket_exists()

    return app


app = create_app()

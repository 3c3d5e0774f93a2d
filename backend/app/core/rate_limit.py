from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from app.core.audit_log import client_ip


@dataclass(frozen=True)
class RateLimit:
    key: str
    limit: int
    window_seconds: int


def rate_limit(*, key_prefix: str, setting: str, window_seconds: int = 60):
    """Fixed-window limiter keyed by route and caller (subject if known, else ip).

    `setting` names the Settings attribute holding the per-window limit.
    Redis failures let the request through.
    """

    async def _dep(request: Request) -> RateLimit:
        st = request.app.state
        limit = int(getattr(st.settings, setting))
        who = getattr(request.state, "user_id", None) or client_ip(
            request, trust_proxy_headers=bool(st.settings.trust_proxy_headers)
        ) or "unknown"
        key = f"rl:{key_prefix}:{request.method}:{who}"

        r = st.redis
        try:
            current = r.incr(key)
            if current == 1:
                r.expire(key, int(window_seconds))
        except Exception:
            return RateLimit(key=key, limit=limit, window_seconds=int(window_seconds))

        if int(current) > limit:
            ttl = r.ttl(key)
            retry_after = int(ttl) if ttl and ttl > 0 else int(window_seconds)
            raise HTTPException(
                status_code=429,
                detail="rate limit exceeded",
                headers={"Retry-After": str(retry_after)},
            )

        return RateLimit(key=key, limit=limit, window_seconds=int(window_seconds))

    return Depends(_dep)

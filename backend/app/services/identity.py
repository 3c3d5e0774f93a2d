from __future__ import annotations

from typing import Protocol

import httpx
from jose import JWTError, jwt

from app.core.config import Settings
from app.core.errors import CollaboratorError, Unauthenticated


class IdentityProvider(Protocol):
    def verify(self, token: str) -> str:
        """Return the subject id for `token` or raise Unauthenticated."""
        ...


class JwtIdentityProvider:
    def __init__(
        self,
        secret_key: str,
        *,
        algorithm: str = "HS256",
        issuer: str | None = None,
        audience: str | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._issuer = issuer or None
        self._audience = audience or None

    def verify(self, token: str) -> str:
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                audience=self._audience,
                options={"verify_aud": self._audience is not None},
            )
        except JWTError as e:
            raise Unauthenticated("invalid token") from e

        sub = str(payload.get("sub") or "").strip()
        if not sub:
            raise Unauthenticated("invalid token")
        return sub


class RemoteIdentityProvider:
    """Asks the identity provider's user endpoint who owns the token."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = str(base_url).rstrip("/") + "/auth/v1/user"
        self._api_key = (api_key or "").strip() or None
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    def verify(self, token: str) -> str:
        headers = {"Authorization": f"Bearer {token}"}
        if self._api_key:
            headers["apikey"] = self._api_key
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                r = client.get(self._url, headers=headers)
        except httpx.HTTPError as e:
            raise CollaboratorError("identity provider unreachable") from e

        if r.status_code in (400, 401, 403, 404):
            raise Unauthenticated("invalid token")
        if r.status_code >= 400:
            raise CollaboratorError(f"identity provider failed: http_{r.status_code}")

        try:
            sub = str(r.json().get("id") or "").strip()
        except (ValueError, AttributeError) as e:
            raise CollaboratorError("identity provider returned a malformed response") from e
        if not sub:
            raise Unauthenticated("invalid token")
        return sub


class IdentityResolver:
    """Single authentication gate: bearer credential -> subject id."""

    def __init__(self, provider: IdentityProvider) -> None:
        self._provider = provider

    def resolve(self, credential: str | None) -> str:
        raw = str(credential or "").strip()
        if not raw:
            raise Unauthenticated()
        scheme, _, token = raw.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token or " " in token:
            raise Unauthenticated("malformed authorization header")
        return self._provider.verify(token)


def build_identity_provider(settings: Settings) -> IdentityProvider:
    kind = (settings.identity_provider or "jwt").strip().lower()
    if kind == "remote":
        if not (settings.identity_base_url or "").strip():
            raise RuntimeError("IDENTITY_BASE_URL must be set when IDENTITY_PROVIDER=remote")
        return RemoteIdentityProvider(
            str(settings.identity_base_url),
            api_key=settings.identity_api_key,
            timeout_seconds=float(settings.identity_timeout_seconds),
        )
    if kind == "jwt":
        return JwtIdentityProvider(
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
    raise RuntimeError(f"unknown IDENTITY_PROVIDER: {settings.identity_provider}")

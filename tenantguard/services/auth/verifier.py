from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import jwt

from tenantguard.core.config import get_settings
from tenantguard.core.errors import Unauthenticated


@dataclass(frozen=True)
class VerifiedCredential:
    subject: str
    # Tenants the credential was issued for; membership rows still decide access.
    tenant_claims: tuple[str, ...]
    expires_at: datetime | None = None


class CredentialVerifier(Protocol):
    def verify(self, credential: str) -> VerifiedCredential: ...


def _normalize_list_claim(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value if item)
    return (str(value),)


class JwtCredentialVerifier:
    def __init__(
        self,
        *,
        secret: str | None = None,
        algorithm: str | None = None,
        issuer: str | None = None,
        audience: str | None = None,
        leeway_s: int | None = None,
    ) -> None:
        settings = get_settings()
        self._secret = secret or settings.auth_jwt_secret
        self._algorithm = algorithm or settings.auth_jwt_algorithm
        self._issuer = issuer if issuer is not None else settings.auth_jwt_issuer
        self._audience = audience if audience is not None else settings.auth_jwt_audience
        self._leeway_s = leeway_s if leeway_s is not None else settings.auth_clock_skew_seconds

    def verify(self, credential: str) -> VerifiedCredential:
        # Every decode failure maps to the same generic error.
        if not credential:
            raise Unauthenticated("Missing credential")
        options: dict[str, Any] = {"require": ["sub", "exp"]}
        if self._audience is None:
            options["verify_aud"] = False
        try:
            claims = jwt.decode(
                credential,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                leeway=self._leeway_s,
                options=options,
            )
        except jwt.PyJWTError as exc:
            raise Unauthenticated("Invalid credential") from exc
        tenants = _normalize_list_claim(claims.get("tenants") or claims.get("tid"))
        expires_at = claims.get("exp")
        return VerifiedCredential(
            subject=str(claims["sub"]),
            tenant_claims=tenants,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None,
        )


def issue_token(
    subject: str,
    tenants: list[str] | tuple[str, ...],
    *,
    ttl_s: int = 3600,
    secret: str | None = None,
    extra_claims: dict[str, Any] | None = None,
) -> str:
    # Local tokens for scripts and tests; production issuers live outside this service.
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": subject,
        "tenants": list(tenants),
        "iat": now,
        "exp": now + timedelta(seconds=ttl_s),
    }
    if settings.auth_jwt_issuer:
        payload["iss"] = settings.auth_jwt_issuer
    if settings.auth_jwt_audience:
        payload["aud"] = settings.auth_jwt_audience
    payload.update(extra_claims or {})
    return jwt.encode(payload, secret or settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)

"""Validation of identity-provider session tokens.

The hosted identity provider signs access tokens with a shared HS256
secret.  Application claims live under ``app_metadata``: ``tenant_id``
names the tenant the user belongs to and ``role`` is either ``admin`` or
``member``.  The top-level ``role`` claim is the provider's database role
(``authenticated``) and is not used for authorisation.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel, Field, SecretStr

logger = logging.getLogger(__name__)


class TokenConfig(BaseModel):
    """Verification parameters for session tokens."""

    jwt_secret: SecretStr
    jwt_algorithm: str = "HS256"
    audience: str = "authenticated"
    token_ttl_seconds: int = 3600


class TokenClaims(BaseModel):
    """Validated identity extracted from a session token."""

    sub: str
    tenant_id: str
    role: str = "member"
    email: str | None = None
    exp: int | None = None
    scopes: list[str] = Field(default_factory=list)


class TokenManager:
    """Validates (and, for development and tests, issues) session tokens."""

    def __init__(self, config: TokenConfig) -> None:
        self._config = config

    @property
    def config(self) -> TokenConfig:
        return self._config

    def validate_token(self, token: str) -> TokenClaims:
        """Verify signature, expiry and audience and return the claims.

        Raises
        ------
        PermissionError
            If the token is malformed, expired, signed with another key,
            issued for another audience, or carries no tenant.
        """
        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                self._config.jwt_secret.get_secret_value(),
                algorithms=[self._config.jwt_algorithm],
                audience=self._config.audience,
            )
        except ExpiredSignatureError as exc:
            raise PermissionError("Token has expired") from exc
        except JWTError as exc:
            raise PermissionError(str(exc)) from exc

        sub = payload.get("sub")
        if not sub:
            raise PermissionError("Token has no subject")

        app_metadata = payload.get("app_metadata") or {}
        tenant_id = app_metadata.get("tenant_id")
        if not tenant_id:
            raise PermissionError("Token is not bound to a tenant")

        return TokenClaims(
            sub=str(sub),
            tenant_id=str(tenant_id),
            role=str(app_metadata.get("role") or "member"),
            email=payload.get("email"),
            exp=payload.get("exp"),
            scopes=list(app_metadata.get("scopes") or []),
        )

    def generate_token(
        self,
        sub: str,
        tenant_id: str,
        *,
        role: str = "member",
        email: str | None = None,
        ttl_seconds: int | None = None,
    ) -> str:
        """Issue a token shaped like the identity provider's."""
        now = int(time.time())
        payload: dict[str, Any] = {
            "sub": sub,
            "aud": self._config.audience,
            "role": "authenticated",
            "iat": now,
            "exp": now + (ttl_seconds if ttl_seconds is not None else self._config.token_ttl_seconds),
            "app_metadata": {"tenant_id": tenant_id, "role": role},
        }
        if email is not None:
            payload["email"] = email
        return jwt.encode(
            payload,
            self._config.jwt_secret.get_secret_value(),
            algorithm=self._config.jwt_algorithm,
        )

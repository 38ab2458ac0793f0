"""JWT session tokens.

Sessions are issued by the portal's auth provider and carried as
``Authorization: Bearer <token>``.  Tokens are HS256 JWTs whose claims
carry ``sub`` (user id), ``role`` (``freelancer`` or ``client``), ``iat``
and ``exp``.  Validation failures raise ``PermissionError`` so the auth
middleware can translate them to 401/403.
"""

from __future__ import annotations

import time
from typing import Any

import jwt
from pydantic import BaseModel, SecretStr, ValidationError

DEFAULT_TOKEN_ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL_SECONDS = 3600


class SessionClaims(BaseModel):
    """Validated claims of a session token."""

    sub: str
    role: str = "client"
    iat: float
    exp: float


class TokenManager:
    """Issue and validate session JWTs with a shared secret."""

    def __init__(
        self,
        secret: SecretStr,
        *,
        algorithm: str = DEFAULT_TOKEN_ALGORITHM,
        ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
    ) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._ttl = ttl_seconds

    def generate_token(self, sub: str, role: str, *, now: float | None = None) -> str:
        issued = int(time.time() if now is None else now)
        payload: dict[str, Any] = {"sub": sub, "role": role, "iat": issued, "exp": issued + self._ttl}
        return jwt.encode(payload, self._secret.get_secret_value(), algorithm=self._algorithm)

    def validate_token(self, token: str) -> SessionClaims:
        """Verify signature and expiry and return the claims.

        Only the configured algorithm is accepted, so ``alg: none`` and
        algorithm-swapped tokens are rejected.

        Raises
        ------
        PermissionError
            If the token is malformed, the signature does not match, or the
            token has expired.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret.get_secret_value(),
                algorithms=[self._algorithm],
                options={"require": ["sub", "iat", "exp"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise PermissionError("Token has expired") from exc
        except jwt.InvalidSignatureError as exc:
            raise PermissionError("Signature mismatch") from exc
        except jwt.DecodeError as exc:
            raise PermissionError("Malformed token") from exc
        except jwt.InvalidTokenError as exc:
            raise PermissionError(f"Rejected token: {exc}") from exc

        try:
            return SessionClaims.model_validate(payload)
        except ValidationError as exc:
            raise PermissionError("Malformed token claims") from exc

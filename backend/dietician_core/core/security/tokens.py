"""
Access token verification.

Tokens are issued by the external token service and signed with a shared
secret; this module only validates them and exposes the caller as a
``TokenPayload``. The verified subject is bound as the acting principal for
audit capture.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt  # type: ignore[import-untyped]

from dietician_core.core.config import get_settings
from dietician_core.core.logging import get_logger
from dietician_core.core.security.context import set_current_principal

logger = get_logger(__name__)
security = HTTPBearer(auto_error=True)


@dataclass(frozen=True)
class TokenPayload:
    """
    Validated token payload.

    ``sub`` is the stable user id issued by the token service; ``email`` is
    the address the caller authenticated with and is only used to derive the
    lookup digest.
    """

    sub: str
    email: str | None
    roles: list[str]
    exp: datetime
    iat: datetime
    raw_claims: dict[str, Any]


def decode_token(token: str) -> TokenPayload:
    """Validate signature, expiry and (when configured) issuer."""
    settings = get_settings()
    if not settings.token_secret:
        logger.error("token_secret_missing")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Token verification is not configured",
        )

    try:
        payload = jwt.decode(
            token,
            settings.token_secret,
            algorithms=[settings.token_algorithm],
            issuer=settings.token_issuer,
            options={
                "verify_aud": False,
                "verify_exp": True,
                "verify_iat": True,
                "verify_iss": settings.token_issuer is not None,
            },
        )
    except JWTError as e:
        logger.warning("token_verification_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    if "sub" not in payload or "exp" not in payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is missing required claims",
        )

    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]

    return TokenPayload(
        sub=str(payload["sub"]),
        email=payload.get("email"),
        roles=[str(role) for role in roles],
        exp=datetime.fromtimestamp(payload["exp"], tz=UTC),
        iat=datetime.fromtimestamp(payload.get("iat", payload["exp"]), tz=UTC),
        raw_claims=payload,
    )


async def verify_token(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> TokenPayload:
    """Dependency that verifies the bearer token and binds the principal."""
    payload = decode_token(credentials.credentials)
    set_current_principal(payload.sub)
    return payload


CurrentUser = Annotated[TokenPayload, Depends(verify_token)]

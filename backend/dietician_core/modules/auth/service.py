"""
OAuth hand-off between the identity provider callback and the client.

The callback handler (external) calls :func:`complete_oauth_login` with the
provider's claims and a freshly issued access token; the client later redeems
the returned code through :func:`redeem_exchange_code`.
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from dietician_core.core.audit import AuditAction, AuditCapture
from dietician_core.core.encryption import FieldCipher
from dietician_core.core.exchange_store import ExchangeCodeStore
from dietician_core.core.logging import get_logger
from dietician_core.core.security.context import acting_as
from dietician_core.db.models import User
from dietician_core.modules.identities.service import IdentityService

logger = get_logger(__name__)


async def complete_oauth_login(
    db: AsyncSession,
    cipher: FieldCipher,
    store: ExchangeCodeStore,
    *,
    email: str,
    google_id: str,
    access_token: str,
    full_name: str | None = None,
    picture_url: str | None = None,
) -> str:
    """Provision or link the identity and park the login result under a one-time code."""
    service = IdentityService(db, cipher)
    user = await service.provision_oauth(
        email,
        google_id,
        full_name=full_name,
        picture_url=picture_url,
    )
    payload: dict[str, Any] = {
        "access_token": access_token,
        "token_type": "bearer",
        "user_id": user.id,
        "role": user.role.role_code if user.role else None,
        "full_name": user.full_name,
    }
    code = await store.issue(payload)
    logger.info("oauth_exchange_code_issued", user_id=user.id)
    return code


async def redeem_exchange_code(
    store: ExchangeCodeStore,
    capture: AuditCapture,
    code: str,
) -> dict[str, Any] | None:
    """
    Redeem ``code`` exactly once.

    Returns ``None`` for unknown, expired or already redeemed codes. A
    successful redemption is recorded as a ``LOGIN`` audit action attributed
    to the redeemed user.
    """
    payload = await store.take_once(code)
    if payload is None:
        logger.warning("oauth_exchange_code_rejected")
        return None

    user_id = payload.get("user_id")
    with acting_as(str(user_id) if user_id is not None else None):
        await capture.record(
            table_name=User.audit_table_name(),
            record_id=user_id,
            action=AuditAction.LOGIN,
        )
    logger.info("oauth_exchange_code_redeemed", user_id=user_id)
    return payload

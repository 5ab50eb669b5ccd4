"""Startup validation of the role/action registry against ``ActionCode``."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dietician_core.core.config import ConfigurationError
from dietician_core.core.logging import get_logger
from dietician_core.core.security.permissions import ActionCode
from dietician_core.db.models import Action, Role, RoleAction

logger = get_logger(__name__)

REQUIRED_ROLES: tuple[str, ...] = ("ADMIN", "DIETICIAN", "PATIENT")


async def validate_action_registry(db: AsyncSession) -> None:
    """
    Refuse to start when the stored registry and the code disagree.

    Every required role and every ``ActionCode`` must exist as a row, and no
    role may be linked to an action code the application does not know.
    Extra unlinked action rows are tolerated and only logged.
    """
    role_codes = set((await db.execute(select(Role.role_code))).scalars().all())
    missing_roles = sorted(set(REQUIRED_ROLES) - role_codes)
    if missing_roles:
        raise ConfigurationError(f"Required roles missing from registry: {', '.join(missing_roles)}")

    stored_actions = set((await db.execute(select(Action.action_code))).scalars().all())
    known_actions = {code.value for code in ActionCode}

    missing_actions = sorted(known_actions - stored_actions)
    if missing_actions:
        raise ConfigurationError(
            f"Action codes missing from registry: {', '.join(missing_actions)}"
        )

    linked_actions = set(
        (
            await db.execute(
                select(Action.action_code)
                .join(RoleAction, RoleAction.action_id == Action.id)
                .distinct()
            )
        )
        .scalars()
        .all()
    )
    unknown_linked = sorted(linked_actions - known_actions)
    if unknown_linked:
        raise ConfigurationError(
            f"Roles are linked to unknown action codes: {', '.join(unknown_linked)}"
        )

    unused = sorted(stored_actions - known_actions)
    if unused:
        logger.warning("registry_unknown_actions", action_codes=unused)

    logger.info(
        "action_registry_validated",
        roles=len(role_codes),
        actions=len(stored_actions),
    )

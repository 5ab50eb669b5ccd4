"""
Idempotent seeding of the role/action registry.

Only missing rows are inserted. Default grants are only added for roles or
actions created by the same run, so an administrator's revocations survive a
restart.
"""

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dietician_core.core.logging import get_logger
from dietician_core.core.security.permissions import ActionCode
from dietician_core.db.models import Action, Role, RoleAction

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoleSeed:
    role_code: str
    role_name: str
    description: str


@dataclass(frozen=True)
class ActionSeed:
    action_code: ActionCode
    action_name: str
    module: str
    description: str | None = None


DEFAULT_ROLES: tuple[RoleSeed, ...] = (
    RoleSeed("ADMIN", "Administrator", "Full administrative access"),
    RoleSeed("DIETICIAN", "Dietician", "Manages assigned patients"),
    RoleSeed("PATIENT", "Patient", "Self-registered patient"),
)

DEFAULT_ACTIONS: tuple[ActionSeed, ...] = (
    ActionSeed(ActionCode.VIEW_PATIENT, "View patients", "PATIENT"),
    ActionSeed(ActionCode.CREATE_PATIENT, "Create patients", "PATIENT"),
    ActionSeed(ActionCode.EDIT_PATIENT, "Edit patients", "PATIENT"),
    ActionSeed(ActionCode.DELETE_PATIENT, "Delete patients", "PATIENT"),
    ActionSeed(ActionCode.ACTIVATE_PATIENT, "Activate patients", "PATIENT"),
    ActionSeed(ActionCode.DEACTIVATE_PATIENT, "Deactivate patients", "PATIENT"),
    ActionSeed(ActionCode.RESET_PATIENT_PASSWORD, "Reset patient passwords", "PATIENT"),
    ActionSeed(ActionCode.VIEW_DIETICIAN, "View dieticians", "DIETICIAN"),
    ActionSeed(ActionCode.CREATE_DIETICIAN, "Create dieticians", "DIETICIAN"),
    ActionSeed(ActionCode.EDIT_DIETICIAN, "Edit dieticians", "DIETICIAN"),
    ActionSeed(ActionCode.ACTIVATE_DIETICIAN, "Activate dieticians", "DIETICIAN"),
    ActionSeed(ActionCode.DEACTIVATE_DIETICIAN, "Deactivate dieticians", "DIETICIAN"),
    ActionSeed(ActionCode.RESET_DIETICIAN_PASSWORD, "Reset dietician passwords", "DIETICIAN"),
    ActionSeed(ActionCode.MANAGE_ROLES, "Manage role permissions", "ADMIN"),
    ActionSeed(ActionCode.VIEW_AUDIT_LOG, "View audit trail", "ADMIN"),
)

DEFAULT_GRANTS: dict[str, frozenset[ActionCode]] = {
    "ADMIN": frozenset(ActionCode),
    "DIETICIAN": frozenset(
        {
            ActionCode.VIEW_PATIENT,
            ActionCode.CREATE_PATIENT,
            ActionCode.EDIT_PATIENT,
            ActionCode.ACTIVATE_PATIENT,
            ActionCode.DEACTIVATE_PATIENT,
            ActionCode.RESET_PATIENT_PASSWORD,
        }
    ),
    "PATIENT": frozenset(),
}


async def seed_reference_data(db: AsyncSession) -> int:
    """
    Insert missing default roles, actions and grants.

    Returns the number of rows inserted. The caller owns the transaction.
    """
    inserted = 0
    new_roles: set[str] = set()
    new_actions: set[str] = set()

    roles = {
        role.role_code: role for role in (await db.execute(select(Role))).scalars().all()
    }
    for seed in DEFAULT_ROLES:
        if seed.role_code not in roles:
            role = Role(
                role_code=seed.role_code,
                role_name=seed.role_name,
                description=seed.description,
                is_active=True,
            )
            db.add(role)
            roles[seed.role_code] = role
            new_roles.add(seed.role_code)
            inserted += 1

    actions = {
        action.action_code: action
        for action in (await db.execute(select(Action))).scalars().all()
    }
    for action_seed in DEFAULT_ACTIONS:
        code = action_seed.action_code.value
        if code not in actions:
            action = Action(
                action_code=code,
                action_name=action_seed.action_name,
                module=action_seed.module,
                description=action_seed.description,
                is_active=True,
            )
            db.add(action)
            actions[code] = action
            new_actions.add(code)
            inserted += 1

    await db.flush()

    existing = {
        (row.role_id, row.action_id)
        for row in (await db.execute(select(RoleAction))).scalars().all()
    }
    for role_code, granted in DEFAULT_GRANTS.items():
        role = roles[role_code]
        for code in sorted(granted, key=lambda c: c.value):
            # grants on pre-existing pairs are an administrator's call
            if role_code not in new_roles and code.value not in new_actions:
                continue
            action = actions[code.value]
            if (role.id, action.id) in existing:
                continue
            db.add(RoleAction(role_id=role.id, action_id=action.id))
            existing.add((role.id, action.id))
            inserted += 1

    await db.flush()
    logger.info("reference_data_seeded", inserted=inserted)
    return inserted

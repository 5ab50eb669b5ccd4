"""
Action-based access control.

A caller may perform an action when their identity record is active and
their role is linked, through ``role_actions``, to an active action with that
code. Every check reads the current rows; nothing is cached, so revoking an
action takes effect on the next request.
"""

from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass
from enum import Enum

from fastapi import HTTPException, status
from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from dietician_core.core.crypto.lookup import identifier_search_key
from dietician_core.core.logging import get_logger
from dietician_core.core.security.tokens import CurrentUser, TokenPayload
from dietician_core.db.models import Action, Role, RoleAction, User
from dietician_core.db.session import DbSession

logger = get_logger(__name__)


class ActionCode(str, Enum):
    """Closed set of action codes known to the application."""

    VIEW_PATIENT = "VIEW_PATIENT"
    CREATE_PATIENT = "CREATE_PATIENT"
    EDIT_PATIENT = "EDIT_PATIENT"
    DELETE_PATIENT = "DELETE_PATIENT"
    ACTIVATE_PATIENT = "ACTIVATE_PATIENT"
    DEACTIVATE_PATIENT = "DEACTIVATE_PATIENT"
    RESET_PATIENT_PASSWORD = "RESET_PATIENT_PASSWORD"
    VIEW_DIETICIAN = "VIEW_DIETICIAN"
    CREATE_DIETICIAN = "CREATE_DIETICIAN"
    EDIT_DIETICIAN = "EDIT_DIETICIAN"
    ACTIVATE_DIETICIAN = "ACTIVATE_DIETICIAN"
    DEACTIVATE_DIETICIAN = "DEACTIVATE_DIETICIAN"
    RESET_DIETICIAN_PASSWORD = "RESET_DIETICIAN_PASSWORD"
    MANAGE_ROLES = "MANAGE_ROLES"
    VIEW_AUDIT_LOG = "VIEW_AUDIT_LOG"

    @classmethod
    def parse(cls, value: "ActionCode | str") -> "ActionCode | None":
        if isinstance(value, ActionCode):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class PermissionPolicy:
    """A set of acceptable actions; holding any one of them satisfies the policy."""

    actions: frozenset[ActionCode]

    @classmethod
    def any_of(cls, *actions: ActionCode) -> "PermissionPolicy":
        if not actions:
            raise ValueError("a permission policy needs at least one action")
        return cls(actions=frozenset(actions))

    def is_satisfied_by(self, granted: Collection[str]) -> bool:
        return any(action.value in granted for action in self.actions)

    def codes(self) -> list[str]:
        return sorted(action.value for action in self.actions)


class PermissionEngine:
    """Resolves whether a principal's role grants an action."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def has_permission(
        self,
        principal: TokenPayload | None,
        action_code: ActionCode | str,
    ) -> bool:
        """
        Return ``True`` only for an active principal whose active role is
        linked to an active action with ``action_code``. Any missing piece
        yields ``False``.
        """
        action = ActionCode.parse(action_code)
        if action is None:
            logger.warning("permission_check_unknown_action", action=str(action_code))
            return False

        role_id = await self._resolve_active_role(principal)
        if role_id is None:
            return False

        stmt = select(
            exists().where(
                RoleAction.role_id == role_id,
                RoleAction.action_id == Action.id,
                Action.action_code == action.value,
                Action.is_active.is_(True),
            )
        )
        result = await self._db.execute(stmt)
        allowed = bool(result.scalar())

        logger.debug(
            "permission_check",
            sub=principal.sub if principal else None,
            role_id=role_id,
            action=action.value,
            result=allowed,
        )
        return allowed

    async def evaluate(self, principal: TokenPayload | None, policy: PermissionPolicy) -> bool:
        """Return ``True`` when the principal holds at least one policy action."""
        role_id = await self._resolve_active_role(principal)
        if role_id is None:
            return False
        granted = await self._granted_codes(role_id, policy.codes())
        allowed = policy.is_satisfied_by(granted)
        logger.debug(
            "permission_policy_check",
            sub=principal.sub if principal else None,
            role_id=role_id,
            actions=policy.codes(),
            result=allowed,
        )
        return allowed

    async def granted_actions(self, principal: TokenPayload | None) -> set[str]:
        """All active action codes currently granted to the principal."""
        role_id = await self._resolve_active_role(principal)
        if role_id is None:
            return set()
        return await self._granted_codes(role_id)

    async def _granted_codes(
        self,
        role_id: int,
        only: Collection[str] | None = None,
    ) -> set[str]:
        stmt = (
            select(Action.action_code)
            .join(RoleAction, RoleAction.action_id == Action.id)
            .where(RoleAction.role_id == role_id, Action.is_active.is_(True))
        )
        if only is not None:
            stmt = stmt.where(Action.action_code.in_(list(only)))
        result = await self._db.execute(stmt)
        return {str(code) for code in result.scalars().all()}

    async def _resolve_active_role(self, principal: TokenPayload | None) -> int | None:
        """
        Role id of the principal's identity record, or ``None`` when the record
        or its role is missing or inactive.

        The active flags are filtered in SQL, never read from session-cached
        objects, so a deactivation committed elsewhere applies immediately.
        """
        if principal is None or not principal.email:
            return None
        try:
            search_key = identifier_search_key(principal.email)
        except ValueError:
            return None
        result = await self._db.execute(
            select(User.role_id)
            .join(Role, Role.id == User.role_id)
            .where(
                User.email_search == search_key,
                User.is_active.is_(True),
                Role.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()


def require_permission(*actions: ActionCode) -> Callable[..., Awaitable[TokenPayload]]:
    """
    Build a dependency that admits callers holding any of ``actions``.

    Usage::

        @router.get("/users", dependencies=[Depends(require_permission(
            ActionCode.VIEW_PATIENT, ActionCode.VIEW_DIETICIAN))])
    """
    policy = PermissionPolicy.any_of(*actions)

    async def _require(user: CurrentUser, db: DbSession) -> TokenPayload:
        if not await PermissionEngine(db).evaluate(user, policy):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access denied",
            )
        return user

    return _require

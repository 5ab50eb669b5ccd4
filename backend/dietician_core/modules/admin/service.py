"""
Administrative operations on the role/action registry and identity records.
"""

from collections.abc import Iterable

from sqlalchemy import desc, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dietician_core.core.encryption import FieldCipher
from dietician_core.core.logging import get_logger
from dietician_core.db.models import Action, AuditRecord, Role, RoleAction, User
from dietician_core.modules.identities.service import (
    IdentityNotFound,
    IdentityService,
    RoleNotFound,
)

logger = get_logger(__name__)


class ActionNotFound(LookupError):
    """One or more action ids do not exist."""


def normalize_role_code(role_code: str) -> str:
    return role_code.strip().upper()


class AdminService:
    """
    Reads and edits roles, their granted actions and identity records.

    ``cipher`` is only needed by the identity writes (``create_user`` and
    ``update_user``), which seal e-mail addresses.
    """

    def __init__(self, db: AsyncSession, cipher: FieldCipher | None = None) -> None:
        self._db = db
        self._cipher = cipher

    async def list_roles(self) -> list[Role]:
        result = await self._db.execute(select(Role).order_by(Role.role_code))
        return list(result.scalars().all())

    async def list_actions(self) -> list[Action]:
        """Active actions ordered by module, then name."""
        result = await self._db.execute(
            select(Action)
            .where(Action.is_active.is_(True))
            .order_by(Action.module, Action.action_name)
        )
        return list(result.scalars().all())

    async def get_role(self, role_id: int) -> Role:
        role = await self._db.get(Role, role_id)
        if role is None:
            raise RoleNotFound(f"role {role_id} not found")
        return role

    async def actions_for_role(self, role_id: int) -> list[Action]:
        """Active actions currently granted to ``role_id``."""
        await self.get_role(role_id)
        result = await self._db.execute(
            select(Action)
            .join(RoleAction, RoleAction.action_id == Action.id)
            .where(RoleAction.role_id == role_id, Action.is_active.is_(True))
            .order_by(Action.module, Action.action_name)
        )
        return list(result.scalars().all())

    async def role_has_action(self, role_id: int, action_code: str) -> bool:
        result = await self._db.execute(
            select(
                exists().where(
                    RoleAction.role_id == role_id,
                    RoleAction.action_id == Action.id,
                    Action.action_code == action_code,
                )
            )
        )
        return bool(result.scalar())

    async def role_action_matrix(self, role_id: int) -> list[tuple[Action, bool]]:
        """Every active action paired with whether ``role_id`` holds it."""
        await self.get_role(role_id)
        assigned = set(
            (
                await self._db.execute(
                    select(RoleAction.action_id).where(RoleAction.role_id == role_id)
                )
            )
            .scalars()
            .all()
        )
        return [(action, action.id in assigned) for action in await self.list_actions()]

    async def update_role_actions(self, role_id: int, action_ids: Iterable[int]) -> list[Action]:
        """
        Replace the set of actions granted to a role.

        Grants are removed and added individually so each change lands in the
        audit trail. Takes effect on the next permission check.
        """
        role = await self.get_role(role_id)
        wanted = set(action_ids)

        if wanted:
            found = set(
                (await self._db.execute(select(Action.id).where(Action.id.in_(wanted))))
                .scalars()
                .all()
            )
            missing = sorted(wanted - found)
            if missing:
                raise ActionNotFound(f"actions not found: {', '.join(map(str, missing))}")

        current = {
            grant.action_id: grant
            for grant in (
                await self._db.execute(select(RoleAction).where(RoleAction.role_id == role.id))
            )
            .scalars()
            .all()
        }

        removed = set(current) - wanted
        added = wanted - set(current)
        for action_id in removed:
            await self._db.delete(current[action_id])
        for action_id in sorted(added):
            self._db.add(RoleAction(role_id=role.id, action_id=action_id))
        await self._db.flush()

        logger.info(
            "role_actions_updated",
            role_id=role.id,
            role_code=role.role_code,
            added=len(added),
            removed=len(removed),
        )
        return await self.actions_for_role(role.id)

    async def user_actions(self, user_id: int) -> list[str]:
        """Action codes the user can currently exercise."""
        row = (
            await self._db.execute(
                select(User.role_id, User.is_active, Role.is_active)
                .outerjoin(Role, Role.id == User.role_id)
                .where(User.id == user_id)
            )
        ).one_or_none()
        if row is None:
            raise IdentityNotFound(f"user {user_id} not found")
        role_id, user_active, role_active = row
        if not user_active or not role_active:
            return []
        result = await self._db.execute(
            select(Action.action_code)
            .join(RoleAction, RoleAction.action_id == Action.id)
            .where(RoleAction.role_id == role_id, Action.is_active.is_(True))
            .order_by(Action.action_code)
        )
        return list(result.scalars().all())

    async def list_users(
        self,
        role_code: str | None = None,
        *,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[User], int]:
        """Page through identity records, optionally filtered by role code."""
        query = select(User)
        count_query = select(func.count()).select_from(User)
        if role_code is not None:
            query = query.join(Role, Role.id == User.role_id).where(Role.role_code == role_code)
            count_query = count_query.join(Role, Role.id == User.role_id).where(
                Role.role_code == role_code
            )

        total = (await self._db.execute(count_query)).scalar() or 0
        result = await self._db.execute(
            query.order_by(desc(User.created_at), desc(User.id))
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), int(total)

    async def get_user(self, user_id: int) -> User:
        user = await self._db.get(User, user_id)
        if user is None:
            raise IdentityNotFound(f"user {user_id} not found")
        return user

    async def get_role_by_code(self, role_code: str) -> Role:
        code = normalize_role_code(role_code)
        result = await self._db.execute(select(Role).where(Role.role_code == code))
        role = result.scalar_one_or_none()
        if role is None:
            raise RoleNotFound(f"role {code} not found")
        return role

    async def create_user(
        self,
        email: str,
        role_code: str,
        *,
        full_name: str | None = None,
    ) -> User:
        """
        Create an active identity record with no password.

        The account signs in through OAuth or after a password is set by the
        external password flow. Raises ``IdentityAlreadyExists`` or
        ``RoleNotFound``.
        """
        user = await self._identities().register(
            email,
            normalize_role_code(role_code),
            full_name=full_name,
        )
        logger.info("admin_user_created", user_id=user.id, role=user.role.role_code)
        return user

    async def update_user(
        self,
        user_id: int,
        *,
        full_name: str | None = None,
        role_code: str | None = None,
        email: str | None = None,
    ) -> User:
        """
        Apply the given changes to an identity record; ``None`` leaves a
        field as it is.

        The role is resolved before anything is modified, so an unknown code
        leaves the record untouched.
        """
        user = await self.get_user(user_id)
        role = await self.get_role_by_code(role_code) if role_code is not None else None

        changed: list[str] = []
        if email is not None:
            await self._identities().change_identifier(user, email)
            changed.append("email")
        if role is not None and role.id != user.role_id:
            user.role = role
            changed.append("role")
        if full_name is not None and full_name != user.full_name:
            user.full_name = full_name
            changed.append("full_name")
        await self._db.flush()

        logger.info("admin_user_updated", user_id=user.id, fields=changed)
        return user

    def _identities(self) -> IdentityService:
        if self._cipher is None:
            raise RuntimeError("AdminService needs a field cipher for identity writes")
        return IdentityService(self._db, self._cipher)


async def list_audit_records(
    db: AsyncSession,
    *,
    table_name: str | None = None,
    record_id: str | None = None,
    page: int = 1,
    page_size: int = 50,
) -> tuple[list[AuditRecord], int]:
    """Newest-first audit records from the audit store."""
    query = select(AuditRecord)
    count_query = select(func.count()).select_from(AuditRecord)
    if table_name is not None:
        query = query.where(AuditRecord.table_name == table_name)
        count_query = count_query.where(AuditRecord.table_name == table_name)
    if record_id is not None:
        query = query.where(AuditRecord.record_id == record_id)
        count_query = count_query.where(AuditRecord.record_id == record_id)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(desc(AuditRecord.changed_date), desc(AuditRecord.id))
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), int(total)

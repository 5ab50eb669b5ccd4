"""
Tests for automatic audit capture.

Business data and audit records live in separate SQLite files, so these
tests also show that audit writes commit on their own connection.
"""

from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dietician_core.core.audit import (
    REDACTED,
    AuditAction,
    AuditCapture,
    AuditWriteFailure,
    build_entry,
    get_audit_capture,
)
from dietician_core.core.encryption import FieldCipher
from dietician_core.core.security.context import (
    SYSTEM_PRINCIPAL,
    RequestOrigin,
    acting_as,
)
from dietician_core.db.models import AuditRecord, Role, User
from dietician_core.db.session import build_audit_session_factory
from dietician_core.modules.identities.service import IdentityService


async def _records(
    audit_session_factory: async_sessionmaker[AsyncSession],
    table_name: str | None = None,
) -> list[AuditRecord]:
    async with audit_session_factory() as session:
        query = select(AuditRecord).order_by(AuditRecord.id)
        if table_name is not None:
            query = query.where(AuditRecord.table_name == table_name)
        result = await session.execute(query)
        return list(result.scalars().all())


async def _patient_role(db: AsyncSession) -> Role:
    result = await db.execute(select(Role).where(Role.role_code == "PATIENT"))
    return result.scalar_one()


def _user(role: Role, suffix: str = "a") -> User:
    return User(
        email_encrypted=f"blob-{suffix}",
        email_search=f"search-{suffix}",
        role=role,
        full_name="Before",
        is_active=True,
    )


class TestMutationCapture:
    @pytest.mark.asyncio
    async def test_insert_update_delete_each_write_one_record(
        self,
        db_session: AsyncSession,
        audit_capture: AuditCapture,
        audit_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        user = _user(await _patient_role(db_session))
        db_session.add(user)
        await db_session.commit()

        user.full_name = "After"
        await db_session.commit()

        await db_session.delete(user)
        await db_session.commit()
        await audit_capture.drain()

        records = await _records(audit_session_factory, "users")
        assert [r.action for r in records] == ["INSERT", "UPDATE", "DELETE"]
        assert {r.record_id for r in records} == {str(user.id)}

        insert, update, _delete = records
        assert insert.details == []
        assert [(d.field_name, d.old_value, d.new_value) for d in update.details] == [
            ("full_name", "Before", "After")
        ]

    @pytest.mark.asyncio
    async def test_unauthenticated_changes_attributed_to_system(
        self,
        db_session: AsyncSession,
        audit_capture: AuditCapture,
        audit_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        db_session.add(_user(await _patient_role(db_session)))
        await db_session.commit()
        await audit_capture.drain()

        records = await _records(audit_session_factory, "users")
        assert len(records) == 1
        assert records[0].changed_by == SYSTEM_PRINCIPAL
        assert records[0].ip_address is None

    @pytest.mark.asyncio
    async def test_principal_and_origin_are_stamped(
        self,
        db_session: AsyncSession,
        audit_capture: AuditCapture,
        audit_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        role = await _patient_role(db_session)
        origin = RequestOrigin(ip_address="203.0.113.9", user_agent="pytest-agent")
        with acting_as("admin-sub", origin=origin):
            db_session.add(_user(role))
            await db_session.commit()
        await audit_capture.drain()

        (record,) = await _records(audit_session_factory, "users")
        assert record.changed_by == "admin-sub"
        assert record.ip_address == "203.0.113.9"
        assert record.user_agent == "pytest-agent"

    @pytest.mark.asyncio
    async def test_unmodified_dirty_object_writes_nothing(
        self,
        db_session: AsyncSession,
        audit_capture: AuditCapture,
        audit_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        user = _user(await _patient_role(db_session))
        db_session.add(user)
        await db_session.commit()

        user.full_name = "Before"
        await db_session.commit()
        await audit_capture.drain()

        records = await _records(audit_session_factory, "users")
        assert [r.action for r in records] == ["INSERT"]

    @pytest.mark.asyncio
    async def test_sensitive_columns_redacted(
        self,
        db_session: AsyncSession,
        users: dict[str, User],
        cipher: FieldCipher,
        audit_capture: AuditCapture,
        audit_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        patient = users["PATIENT"]
        await IdentityService(db_session, cipher).change_identifier(patient, "new@example.com")
        await db_session.commit()
        await audit_capture.drain()

        updates = [
            r
            for r in await _records(audit_session_factory, "users")
            if r.action == "UPDATE" and r.record_id == str(patient.id)
        ]
        assert len(updates) == 1
        details = {d.field_name: (d.old_value, d.new_value) for d in updates[0].details}
        assert details == {
            "email_encrypted": (REDACTED, REDACTED),
            "email_search": (REDACTED, REDACTED),
        }

    @pytest.mark.asyncio
    async def test_audit_record_survives_business_rollback(
        self,
        db_session: AsyncSession,
        audit_capture: AuditCapture,
        audit_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        db_session.add(_user(await _patient_role(db_session), suffix="rolled-back"))
        await db_session.flush()
        await db_session.rollback()
        await audit_capture.drain()

        records = await _records(audit_session_factory, "users")
        assert [r.action for r in records] == ["INSERT"]

        result = await db_session.execute(
            select(User).where(User.email_search == "search-rolled-back")
        )
        assert result.scalar_one_or_none() is None


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failing_audit_store_does_not_break_business_commit(
        self,
        db_session: AsyncSession,
        audit_capture: AuditCapture,
        tmp_path: Path,
    ) -> None:
        # audit engine pointing at a database without the audit tables
        broken_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        broken = AuditCapture(build_audit_session_factory(broken_engine))
        role = await _patient_role(db_session)

        audit_capture.uninstall()
        broken.install()
        try:
            with patch("dietician_core.core.audit.logger") as mock_logger:
                db_session.add(_user(role, suffix="kept"))
                await db_session.commit()
                await broken.drain()
        finally:
            broken.uninstall()
            audit_capture.install()
            await broken_engine.dispose()

        assert broken.pending == 0
        mock_logger.error.assert_called()
        assert mock_logger.error.call_args.args[0] == "audit_write_failed"

        result = await db_session.execute(select(User).where(User.email_search == "search-kept"))
        assert result.scalar_one_or_none() is not None

    @pytest.mark.asyncio
    async def test_record_never_raises(self, audit_capture: AuditCapture) -> None:
        with patch.object(audit_capture, "_write", side_effect=AuditWriteFailure("down")):
            await audit_capture.record(
                table_name="users",
                record_id=1,
                action=AuditAction.LOGIN,
            )

    @pytest.mark.asyncio
    async def test_write_wraps_errors(self, audit_capture: AuditCapture) -> None:
        entry = build_entry(table_name="users", record_id="1", action=AuditAction.LOGIN)
        with patch.object(audit_capture, "_session_factory", side_effect=RuntimeError("boom")):
            with pytest.raises(AuditWriteFailure):
                await audit_capture._write(entry)


class TestBusinessActions:
    @pytest.mark.asyncio
    async def test_record_writes_custom_action_with_details(
        self,
        audit_capture: AuditCapture,
        audit_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        with acting_as("patient-sub"):
            await audit_capture.record(
                table_name="users",
                record_id=7,
                action=AuditAction.LOGIN,
                changes={"email_verified": (False, True)},
            )

        (record,) = await _records(audit_session_factory, "users")
        assert record.action == "LOGIN"
        assert record.record_id == "7"
        assert record.changed_by == "patient-sub"
        assert [(d.field_name, d.old_value, d.new_value) for d in record.details] == [
            ("email_verified", "False", "True")
        ]

    def test_build_entry_truncates_long_user_agent(self) -> None:
        origin = RequestOrigin(ip_address="127.0.0.1", user_agent="x" * 400)
        with acting_as(None, origin=origin):
            entry = build_entry(table_name="users", record_id="1", action="LOGIN")
        assert entry.changed_by == SYSTEM_PRINCIPAL
        assert entry.user_agent is not None
        assert len(entry.user_agent) == 255


class TestInstallation:
    @pytest.mark.asyncio
    async def test_install_is_idempotent(self, audit_capture: AuditCapture) -> None:
        audit_capture.install()
        audit_capture.uninstall()
        audit_capture.uninstall()
        audit_capture.install()

    @pytest.mark.asyncio
    async def test_global_accessor(self, audit_capture: AuditCapture) -> None:
        assert get_audit_capture() is audit_capture

"""
Automatic audit trail for auditable entities.

``AuditCapture`` listens to ``after_flush`` on the business session class and
turns every insert, update and delete of an ``AuditableMixin`` entity into an
``AuditRecord``. Records are written through a **separate session factory**
(own engine, own connection, own transaction), so an audit write can commit
even when the business transaction later rolls back, and a failed audit write
never reaches the code that triggered it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session, UOWTransaction

from dietician_core.core.logging import get_logger
from dietician_core.core.security.context import (
    current_principal_name,
    current_request_origin,
)
from dietician_core.db.models import AuditableMixin, AuditRecord, AuditRecordDetail

logger = get_logger(__name__)

REDACTED = "***"
_IGNORED_FIELDS = frozenset({"created_at", "updated_at"})
_USER_AGENT_MAX = 255
_PRINCIPAL_MAX = 100


class AuditAction(str, Enum):
    """Kinds of audit records."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"


class AuditWriteFailure(Exception):
    """Raised by the audit writer; always caught inside ``AuditCapture``."""


@dataclass(frozen=True, slots=True)
class AuditDetail:
    field_name: str
    old_value: str | None
    new_value: str | None


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """Captured context for one audit record, detached from any session."""

    table_name: str
    record_id: str | None
    action: str
    changed_by: str
    ip_address: str | None = None
    user_agent: str | None = None
    changed_date: datetime = field(default_factory=lambda: datetime.now(UTC))
    details: tuple[AuditDetail, ...] = ()


class AuditedSession(Session):
    """Business session class whose flushes are observed by ``AuditCapture``."""


def _stringify(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    return str(value)


def build_entry(
    *,
    table_name: str,
    record_id: str | None,
    action: AuditAction | str,
    details: Iterable[AuditDetail] = (),
) -> AuditEntry:
    """Build an entry stamped with the current principal and request origin."""
    origin = current_request_origin()
    user_agent = origin.user_agent if origin else None
    return AuditEntry(
        table_name=table_name,
        record_id=record_id,
        action=action.value if isinstance(action, AuditAction) else action,
        changed_by=current_principal_name()[:_PRINCIPAL_MAX],
        ip_address=origin.ip_address if origin else None,
        user_agent=user_agent[:_USER_AGENT_MAX] if user_agent else None,
        details=tuple(details),
    )


def _update_details(entity: AuditableMixin) -> list[AuditDetail]:
    state = inspect(entity)
    redacted = type(entity).__audit_redacted__
    details: list[AuditDetail] = []
    for attr in state.mapper.column_attrs:
        if attr.key in _IGNORED_FIELDS:
            continue
        history = state.attrs[attr.key].history
        if not history.has_changes():
            continue
        old = history.deleted[0] if history.deleted else None
        new = history.added[0] if history.added else None
        if attr.key in redacted:
            details.append(AuditDetail(attr.key, REDACTED, REDACTED))
        else:
            details.append(AuditDetail(attr.key, _stringify(old), _stringify(new)))
    return details


def collect_entries(session: Session) -> list[AuditEntry]:
    """
    Build audit entries for the auditable objects of a flush.

    Must run inside ``after_flush``: the session still exposes its pre-flush
    ``new``/``dirty``/``deleted`` sets and attribute history, while primary
    keys of inserted rows are already populated.
    """
    entries: list[AuditEntry] = []
    for entity in session.new:
        if isinstance(entity, AuditableMixin):
            entries.append(
                build_entry(
                    table_name=entity.audit_table_name(),
                    record_id=entity.audit_record_id(),
                    action=AuditAction.INSERT,
                )
            )
    for entity in session.dirty:
        if not isinstance(entity, AuditableMixin):
            continue
        if not session.is_modified(entity, include_collections=False):
            continue
        entries.append(
            build_entry(
                table_name=entity.audit_table_name(),
                record_id=entity.audit_record_id(),
                action=AuditAction.UPDATE,
                details=_update_details(entity),
            )
        )
    for entity in session.deleted:
        if isinstance(entity, AuditableMixin):
            entries.append(
                build_entry(
                    table_name=entity.audit_table_name(),
                    record_id=entity.audit_record_id(),
                    action=AuditAction.DELETE,
                )
            )
    return entries


class AuditCapture:
    """
    Best-effort, independent audit writer.

    Capture happens synchronously inside the flush; persistence is scheduled
    as a task on the running event loop and uses ``session_factory``, which
    must be bound to an engine distinct from the business engine.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._pending: set[asyncio.Task[None]] = set()
        self._installed_on: type[Session] | None = None

    def install(self, session_class: type[Session] = AuditedSession) -> None:
        """Start observing flushes of ``session_class``."""
        if self._installed_on is not None:
            return
        event.listen(session_class, "after_flush", self._after_flush)
        self._installed_on = session_class

    def uninstall(self) -> None:
        if self._installed_on is None:
            return
        event.remove(self._installed_on, "after_flush", self._after_flush)
        self._installed_on = None

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _after_flush(self, session: Session, _flush_context: UOWTransaction) -> None:
        try:
            entries = collect_entries(session)
        except Exception:
            logger.warning("audit_capture_failed", exc_info=True)
            return
        for entry in entries:
            self._schedule(entry)

    def _schedule(self, entry: AuditEntry) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "audit_capture_no_event_loop",
                table_name=entry.table_name,
                record_id=entry.record_id,
                action=entry.action,
            )
            return
        task = loop.create_task(self._write_safely(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def record(
        self,
        *,
        table_name: str,
        record_id: str | int | None,
        action: AuditAction | str,
        changes: Mapping[str, tuple[Any, Any]] | None = None,
    ) -> None:
        """
        Write a business action such as ``LOGIN`` directly.

        ``changes`` maps field names to ``(old, new)`` pairs. Never raises.
        """
        try:
            details = [
                AuditDetail(name, _stringify(old), _stringify(new))
                for name, (old, new) in (changes or {}).items()
            ]
            entry = build_entry(
                table_name=table_name,
                record_id=str(record_id) if record_id is not None else None,
                action=action,
                details=details,
            )
        except Exception:
            logger.warning("audit_capture_failed", table_name=table_name, exc_info=True)
            return
        await self._write_safely(entry)

    async def drain(self) -> None:
        """Wait for every scheduled audit write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _write_safely(self, entry: AuditEntry) -> None:
        try:
            await self._write(entry)
        except AuditWriteFailure:
            logger.error(
                "audit_write_failed",
                table_name=entry.table_name,
                record_id=entry.record_id,
                action=entry.action,
                exc_info=True,
            )

    async def _write(self, entry: AuditEntry) -> None:
        try:
            async with self._session_factory() as session:
                record = AuditRecord(
                    table_name=entry.table_name,
                    record_id=entry.record_id,
                    action=entry.action,
                    changed_by=entry.changed_by,
                    changed_date=entry.changed_date,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    details=[
                        AuditRecordDetail(
                            field_name=detail.field_name,
                            old_value=detail.old_value,
                            new_value=detail.new_value,
                        )
                        for detail in entry.details
                    ],
                )
                session.add(record)
                await session.commit()
        except Exception as exc:
            raise AuditWriteFailure(
                f"could not persist {entry.action} audit record for {entry.table_name}"
            ) from exc

        logger.info(
            "audit_record_written",
            table_name=entry.table_name,
            record_id=entry.record_id,
            action=entry.action,
            changed_by=entry.changed_by,
        )


_audit_capture: AuditCapture | None = None


def set_audit_capture(capture: AuditCapture | None) -> None:
    global _audit_capture
    _audit_capture = capture


def get_audit_capture() -> AuditCapture:
    """Dependency returning the capture installed at startup."""
    if _audit_capture is None:
        raise RuntimeError("Audit capture not initialized. Call init_db() first.")
    return _audit_capture

"""
SQLAlchemy ORM models for identity records, role/action permissions and the
audit trail.
"""

from datetime import UTC, datetime
from typing import ClassVar

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# BIGINT identity on PostgreSQL; SQLite only autoincrements INTEGER PRIMARY KEY.
_PrimaryKey = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class AuditableMixin:
    """
    Capability contract for entities whose mutations are written to the
    audit trail.

    Implementers return their own record identifier; the audit listener never
    introspects primary keys. Columns listed in ``__audit_redacted__`` are
    written as ``"***"`` in field-level audit details.
    """

    __audit_redacted__: ClassVar[frozenset[str]] = frozenset()

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )

    @classmethod
    def audit_table_name(cls) -> str:
        return str(getattr(cls, "__tablename__"))

    def audit_record_id(self) -> str | None:
        raise NotImplementedError


# =============================================================================
# Role / Action Registry
# =============================================================================


class Role(AuditableMixin, Base):
    """Named permission bucket (ADMIN, DIETICIAN, PATIENT)."""

    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(_PrimaryKey, primary_key=True, autoincrement=True)
    role_code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    role_name: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(String(200))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    role_actions: Mapped[list["RoleAction"]] = relationship(
        back_populates="role",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def audit_record_id(self) -> str | None:
        return str(self.id) if self.id is not None else None


class Action(AuditableMixin, Base):
    """
    Granular capability that can be granted to roles.

    Examples: VIEW_PATIENT, EDIT_PATIENT, MANAGE_ROLES.
    """

    __tablename__ = "actions"

    id: Mapped[int] = mapped_column(_PrimaryKey, primary_key=True, autoincrement=True)
    action_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    action_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(255))
    module: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_actions_module", "module"),
        Index("ix_actions_is_active", "is_active"),
    )

    def audit_record_id(self) -> str | None:
        return str(self.id) if self.id is not None else None


class RoleAction(AuditableMixin, Base):
    """
    Grant of one action to one role.

    The (role_id, action_id) pair is unique; this table is the only source of
    truth for permission checks.
    """

    __tablename__ = "role_actions"

    id: Mapped[int] = mapped_column(_PrimaryKey, primary_key=True, autoincrement=True)
    role_id: Mapped[int] = mapped_column(
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
    )
    action_id: Mapped[int] = mapped_column(
        ForeignKey("actions.id", ondelete="CASCADE"),
        nullable=False,
    )

    role: Mapped["Role"] = relationship(back_populates="role_actions", lazy="selectin")
    action: Mapped["Action"] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("role_id", "action_id", name="uq_role_action"),
        Index("ix_role_actions_role_id", "role_id"),
    )

    def audit_record_id(self) -> str | None:
        return str(self.id) if self.id is not None else None


# =============================================================================
# Identity Record
# =============================================================================


class User(AuditableMixin, Base):
    """
    Identity record for dieticians, patients and administrators.

    ``email_encrypted`` holds the AES-GCM blob of the normalized e-mail and
    ``email_search`` its SHA-256 lookup digest. Both are always written
    together; lookups query ``email_search`` only.
    """

    __tablename__ = "users"
    __audit_redacted__ = frozenset({"email_encrypted", "email_search", "password_hash"})

    id: Mapped[int] = mapped_column(_PrimaryKey, primary_key=True, autoincrement=True)
    email_encrypted: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        comment="base64(nonce || ciphertext || tag); opaque",
    )
    email_search: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        nullable=False,
        comment="base64 SHA-256 of the normalized e-mail; equality lookups only",
    )
    password_hash: Mapped[str | None] = mapped_column(
        String(100),
        comment="Hash from the external password primitive; NULL for OAuth users",
    )
    google_id: Mapped[str | None] = mapped_column(String(100), unique=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id"), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(100))
    profile_picture_url: Mapped[str | None] = mapped_column(String(500))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    role: Mapped["Role"] = relationship(lazy="selectin")

    __table_args__ = (Index("ix_users_role_id", "role_id"),)

    def audit_record_id(self) -> str | None:
        return str(self.id) if self.id is not None else None


# =============================================================================
# Audit Trail
# =============================================================================


class AuditRecord(Base):
    """
    Append-only record of one mutation or business action.

    Written exclusively by ``AuditCapture`` on its own session; never updated.
    """

    __tablename__ = "audit_records"

    id: Mapped[int] = mapped_column(_PrimaryKey, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[str | None] = mapped_column(String(64))
    action: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="INSERT, UPDATE, DELETE or a business action such as LOGIN",
    )
    changed_by: Mapped[str] = mapped_column(String(100), nullable=False)
    changed_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(String(255))

    details: Mapped[list["AuditRecordDetail"]] = relationship(
        back_populates="audit_record",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_audit_records_table_record", "table_name", "record_id"),
        Index("ix_audit_records_changed_by", "changed_by"),
        Index("ix_audit_records_changed_date", "changed_date"),
    )


class AuditRecordDetail(Base):
    """Field-level old/new pair belonging to an audit record."""

    __tablename__ = "audit_record_details"

    id: Mapped[int] = mapped_column(_PrimaryKey, primary_key=True, autoincrement=True)
    audit_record_id: Mapped[int] = mapped_column(
        ForeignKey("audit_records.id", ondelete="CASCADE"),
        nullable=False,
    )
    field_name: Mapped[str] = mapped_column(String(50), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text)
    new_value: Mapped[str | None] = mapped_column(Text)

    audit_record: Mapped["AuditRecord"] = relationship(back_populates="details")

    __table_args__ = (Index("ix_audit_record_details_record", "audit_record_id"),)

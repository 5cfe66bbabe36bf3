import uuid
import datetime as dt
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Table,
    Float,
    JSON,
    UniqueConstraint,
    BigInteger,
    Text,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base
from ..services.time_rules import today_local


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


# Association table for many-to-many User<->Role
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", UUID(as_uuid=True), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)  # admin|manager|site_supervisor|employee
    description: Mapped[Optional[str]] = mapped_column(String(255))

    users = relationship("User", secondary=user_roles, back_populates="roles")


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(100))
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    roles = relationship("Role", secondary=user_roles, back_populates="users", lazy="selectin")


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = uuid_pk()
    code: Mapped[Optional[str]] = mapped_column(String(50), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(50), default="planning", index=True)  # planning|in_progress|on_hold|completed|cancelled
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    # Attendance on an archived project is read-only
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class FileObject(Base):
    __tablename__ = "file_objects"

    id: Mapped[uuid.UUID] = uuid_pk()
    key: Mapped[str] = mapped_column(String(1024), nullable=False, index=True)
    original_name: Mapped[Optional[str]] = mapped_column(String(255))
    content_type: Mapped[Optional[str]] = mapped_column(String(255))
    size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class AttendanceRecord(Base):
    """Daily presence of an employee (linked user) or a day labourer (name only) on a project"""
    __tablename__ = "attendance_records"

    id: Mapped[uuid.UUID] = uuid_pk()
    employee_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True
    )  # NULL for labour records
    employee_name: Mapped[str] = mapped_column(String(100), nullable=False)
    mobile_number: Mapped[Optional[str]] = mapped_column(String(10))
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    project_name: Mapped[Optional[str]] = mapped_column(String(100))  # snapshot for display
    labour_type: Mapped[Optional[str]] = mapped_column(String(50))
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=today_local)  # Local calendar day
    time_in: Mapped[Optional[str]] = mapped_column(String(5))  # HH:MM
    time_out: Mapped[Optional[str]] = mapped_column(String(5))  # HH:MM
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="present")  # present|absent|late|half_day|overtime
    hours: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    overtime_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    attachments: Mapped[list] = mapped_column(JSON, default=list)  # Ordered list of FileObject ids
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    employee = relationship("User", foreign_keys=[employee_id])
    project = relationship("Project")

    # One row per person per day. Employees are keyed by user id; labourers have
    # no account, so name + project stands in for identity. Each index only
    # covers its own kind of row.
    __table_args__ = (
        Index(
            'uq_attendance_employee_date',
            'employee_id', 'date',
            unique=True,
            sqlite_where=text('employee_id IS NOT NULL'),
            postgresql_where=text('employee_id IS NOT NULL'),
        ),
        Index(
            'uq_attendance_labour_name_date_project',
            'employee_name', 'date', 'project_id',
            unique=True,
            sqlite_where=text('employee_id IS NULL'),
            postgresql_where=text('employee_id IS NULL'),
        ),
        Index('idx_attendance_project_date_status', 'project_id', 'date', 'status'),
    )


class AuditLog(Base):
    """Append-only audit log for attendance actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # attendance
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|UPDATE|APPROVE|DELETE
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|script|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )

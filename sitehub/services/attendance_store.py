"""
Attendance record store.

One table holds two kinds of rows: employee attendance (linked to a user)
and day-labour attendance (name only). A person may have at most one row per
day; for labourers "person" means name + project. The rule is checked here
before every write and enforced again by the partial unique indexes on
``attendance_records``, which is what settles two concurrent check-ins.
"""
import uuid
from datetime import date
from typing import Iterable, Iterator, List, Optional, Tuple

import structlog
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import (
    ArchivedProjectError,
    BadRequestError,
    DuplicateAttendanceError,
    NotFoundError,
)
from ..models.models import AttendanceRecord, FileObject, Project, User
from ..schemas.attendance import AttendanceCreate, AttendanceFilters, AttendanceUpdate
from .audit import compute_diff, create_audit_log
from .permissions import get_user_role
from .time_rules import today_local, utc_now


logger = structlog.get_logger(__name__)

EXPORT_COLUMNS = [
    "Employee Name",
    "Mobile Number",
    "Project",
    "Labour Type",
    "Date",
    "Time In",
    "Time Out",
    "Hours",
    "Overtime Hours",
    "Status",
    "Approved",
    "Notes",
    "Created At",
]


# ---------- IDENTITY ----------
def identity_filter(
    employee_id: Optional[uuid.UUID],
    employee_name: str,
    on_date: date,
    project_id: uuid.UUID,
):
    """Predicate matching rows that represent the same person on the same day."""
    if employee_id is not None:
        return and_(
            AttendanceRecord.employee_id == employee_id,
            AttendanceRecord.date == on_date,
        )
    return and_(
        AttendanceRecord.employee_id.is_(None),
        AttendanceRecord.employee_name == employee_name,
        AttendanceRecord.date == on_date,
        AttendanceRecord.project_id == project_id,
    )


def duplicate_message(employee_id: Optional[uuid.UUID], employee_name: str) -> str:
    if employee_id is not None:
        return "Attendance for this employee on this date already exists"
    return (
        f'Attendance for "{employee_name}" on this date in this project already exists. '
        "Please update the existing record instead."
    )


def find_duplicate(
    db: Session,
    employee_id: Optional[uuid.UUID],
    employee_name: str,
    on_date: date,
    project_id: uuid.UUID,
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[AttendanceRecord]:
    query = db.query(AttendanceRecord).filter(
        identity_filter(employee_id, employee_name, on_date, project_id)
    )
    if exclude_id is not None:
        query = query.filter(AttendanceRecord.id != exclude_id)
    return query.first()


def _is_duplicate_key(exc: IntegrityError) -> bool:
    # SQLite names the columns, PostgreSQL names the index
    msg = str(getattr(exc, "orig", exc))
    if "uq_attendance_" in msg:
        return True
    return "UNIQUE constraint failed" in msg and "attendance_records." in msg


def _reject_duplicate(
    employee_id: Optional[uuid.UUID],
    employee_name: str,
    on_date: date,
    project_id: uuid.UUID,
    existing_id: Optional[uuid.UUID] = None,
) -> DuplicateAttendanceError:
    logger.info(
        "attendance_duplicate_rejected",
        employee_id=str(employee_id) if employee_id else None,
        employee_name=employee_name,
        date=on_date.isoformat(),
        project_id=str(project_id),
        existing_id=str(existing_id) if existing_id else None,
    )
    return DuplicateAttendanceError(
        duplicate_message(employee_id, employee_name),
        existing_record_id=str(existing_id) if existing_id else None,
    )


def _commit(db: Session, record: AttendanceRecord) -> None:
    """Commit, turning a unique-index hit into the duplicate error. Never retried."""
    # Rollback expires persistent rows, so read the identity first
    identity = (record.employee_id, record.employee_name, record.date, record.project_id)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if _is_duplicate_key(exc):
            raise _reject_duplicate(*identity) from exc
        raise


# ---------- REFERENCES ----------
def _get_project(db: Session, project_id: uuid.UUID) -> Project:
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise NotFoundError("Project not found")
    _ensure_writable(project)
    return project


def _ensure_writable(project: Optional[Project]) -> None:
    if project is not None and project.archived_at is not None:
        raise ArchivedProjectError()


def _get_employee(db: Session, employee_id: uuid.UUID) -> User:
    employee = db.query(User).filter(User.id == employee_id).first()
    if not employee:
        raise NotFoundError("Employee not found")
    return employee


def _check_attachments(db: Session, attachment_ids: Iterable[uuid.UUID]) -> List[str]:
    """Return attachment ids as strings, order kept, repeats dropped."""
    ordered: List[uuid.UUID] = []
    for file_id in attachment_ids:
        if file_id not in ordered:
            ordered.append(file_id)
    if not ordered:
        return []
    found = {row.id for row in db.query(FileObject.id).filter(FileObject.id.in_(ordered)).all()}
    missing = [str(f) for f in ordered if f not in found]
    if missing:
        raise BadRequestError(f"Unknown attachment ids: {', '.join(missing)}")
    return [str(f) for f in ordered]


def _snapshot(record: AttendanceRecord) -> dict:
    return {
        "employee_id": str(record.employee_id) if record.employee_id else None,
        "employee_name": record.employee_name,
        "mobile_number": record.mobile_number,
        "project_id": str(record.project_id) if record.project_id else None,
        "labour_type": record.labour_type,
        "date": record.date.isoformat() if record.date else None,
        "time_in": record.time_in,
        "time_out": record.time_out,
        "status": record.status,
        "hours": record.hours,
        "overtime_hours": record.overtime_hours,
        "notes": record.notes,
        "attachments": list(record.attachments or []),
        "is_approved": record.is_approved,
        "approved_by": str(record.approved_by) if record.approved_by else None,
    }


def _audit(db: Session, record: AttendanceRecord, action: str, actor: User, changes: dict) -> None:
    create_audit_log(
        db=db,
        entity_type="attendance",
        entity_id=record.id,
        action=action,
        actor_id=actor.id,
        actor_role=get_user_role(actor),
        source="api",
        changes_json=changes,
        context={
            "project_id": str(record.project_id),
            "employee_id": str(record.employee_id) if record.employee_id else None,
            "date": record.date.isoformat() if record.date else None,
        },
    )


# ---------- READ ----------
def get_attendance(db: Session, record_id: uuid.UUID) -> AttendanceRecord:
    record = db.query(AttendanceRecord).filter(AttendanceRecord.id == record_id).first()
    if not record:
        raise NotFoundError("Attendance record not found")
    return record


def _apply_filters(query, filters: AttendanceFilters):
    if filters.project_id:
        query = query.filter(AttendanceRecord.project_id == filters.project_id)
    if filters.status:
        query = query.filter(AttendanceRecord.status == filters.status.value)
    if filters.employee_name:
        query = query.filter(AttendanceRecord.employee_name.ilike(f"%{filters.employee_name}%"))
    if filters.date:
        query = query.filter(AttendanceRecord.date == filters.date)
    if filters.date_from:
        query = query.filter(AttendanceRecord.date >= filters.date_from)
    if filters.date_to:
        query = query.filter(AttendanceRecord.date <= filters.date_to)
    if filters.is_approved is not None:
        query = query.filter(AttendanceRecord.is_approved == filters.is_approved)
    if filters.search:
        like = f"%{filters.search}%"
        query = query.filter(
            or_(
                AttendanceRecord.employee_name.ilike(like),
                AttendanceRecord.mobile_number.ilike(like),
                AttendanceRecord.labour_type.ilike(like),
            )
        )
    return query


def _ordered(query):
    return query.order_by(AttendanceRecord.date.desc(), AttendanceRecord.created_at.desc())


def normalize_page(page: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
    page = max(1, page or 1)
    limit = limit or settings.attendance_page_limit_default
    limit = min(max(1, limit), settings.attendance_page_limit_max)
    return page, limit


def list_attendance(
    db: Session,
    filters: AttendanceFilters,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[AttendanceRecord], int]:
    page, limit = normalize_page(page, limit)
    query = _apply_filters(db.query(AttendanceRecord), filters)
    total = query.count()
    rows = _ordered(query).offset((page - 1) * limit).limit(limit).all()
    return rows, total


def list_by_project(db: Session, project_id: uuid.UUID) -> List[AttendanceRecord]:
    if not db.query(Project.id).filter(Project.id == project_id).first():
        raise NotFoundError("Project not found")
    query = db.query(AttendanceRecord).filter(AttendanceRecord.project_id == project_id)
    return _ordered(query).all()


def export_rows(db: Session, filters: AttendanceFilters) -> Iterator[list]:
    query = _ordered(_apply_filters(db.query(AttendanceRecord), filters))
    for r in query.yield_per(500):
        yield [
            r.employee_name,
            r.mobile_number or "",
            r.project_name or "",
            r.labour_type or "",
            r.date.isoformat() if r.date else "",
            r.time_in or "",
            r.time_out or "",
            r.hours or 0,
            r.overtime_hours or 0,
            r.status,
            "yes" if r.is_approved else "no",
            r.notes or "",
            r.created_at.isoformat() if r.created_at else "",
        ]


# ---------- WRITE ----------
def create_attendance(db: Session, payload: AttendanceCreate, actor: User) -> AttendanceRecord:
    project = _get_project(db, payload.project_id)
    if payload.employee_id is not None:
        _get_employee(db, payload.employee_id)
    attachments = _check_attachments(db, payload.attachments)
    on_date = payload.date or today_local()

    existing = find_duplicate(db, payload.employee_id, payload.employee_name, on_date, payload.project_id)
    if existing:
        raise _reject_duplicate(
            payload.employee_id, payload.employee_name, on_date, payload.project_id, existing.id
        )

    record = AttendanceRecord(
        id=uuid.uuid4(),
        employee_id=payload.employee_id,
        employee_name=payload.employee_name,
        mobile_number=payload.mobile_number,
        project_id=project.id,
        project_name=project.name,
        labour_type=payload.labour_type,
        date=on_date,
        time_in=payload.time_in,
        time_out=payload.time_out,
        status=payload.status.value,
        hours=payload.hours,
        overtime_hours=payload.overtime_hours,
        notes=payload.notes,
        attachments=attachments,
        is_approved=False,
        created_by=actor.id,
        created_at=utc_now(),
        updated_at=utc_now(),
    )
    db.add(record)
    _audit(db, record, "CREATE", actor, {"after": _snapshot(record)})
    _commit(db, record)
    db.refresh(record)

    logger.info(
        "attendance_created",
        attendance_id=str(record.id),
        kind="employee" if record.employee_id else "labour",
        project_id=str(record.project_id),
        date=record.date.isoformat(),
        actor_id=str(actor.id),
    )
    return record


def update_attendance(
    db: Session,
    record_id: uuid.UUID,
    payload: AttendanceUpdate,
    actor: User,
) -> AttendanceRecord:
    record = get_attendance(db, record_id)
    _ensure_writable(record.project)

    changes = payload.changes()
    if "project_id" in changes and changes["project_id"] != record.project_id:
        project = _get_project(db, changes["project_id"])
        changes["project_name"] = project.name
    if changes.get("employee_id") is not None:
        _get_employee(db, changes["employee_id"])
    if "attachments" in changes:
        changes["attachments"] = _check_attachments(db, changes["attachments"])
    if "status" in changes:
        changes["status"] = changes["status"].value

    employee_id = changes.get("employee_id", record.employee_id)
    employee_name = changes.get("employee_name", record.employee_name)
    on_date = changes.get("date", record.date)
    project_id = changes.get("project_id", record.project_id)
    existing = find_duplicate(db, employee_id, employee_name, on_date, project_id, exclude_id=record.id)
    if existing:
        raise _reject_duplicate(employee_id, employee_name, on_date, project_id, existing.id)

    before = _snapshot(record)
    for field, value in changes.items():
        setattr(record, field, value)
    record.updated_at = utc_now()

    diff = compute_diff(before, _snapshot(record))
    _audit(db, record, "UPDATE", actor, diff)
    _commit(db, record)
    db.refresh(record)

    logger.info(
        "attendance_updated",
        attendance_id=str(record.id),
        fields=sorted(diff.keys()),
        actor_id=str(actor.id),
    )
    return record


def approve_attendance(db: Session, record_id: uuid.UUID, actor: User) -> AttendanceRecord:
    record = get_attendance(db, record_id)
    _ensure_writable(record.project)
    if record.is_approved:
        raise BadRequestError("Attendance is already approved")

    record.is_approved = True
    record.approved_by = actor.id
    record.approved_at = utc_now()
    record.updated_at = record.approved_at

    _audit(
        db, record, "APPROVE", actor,
        {"before": {"is_approved": False}, "after": {"is_approved": True, "approved_by": str(actor.id)}},
    )
    _commit(db, record)
    db.refresh(record)

    logger.info("attendance_approved", attendance_id=str(record.id), actor_id=str(actor.id))
    return record


def delete_attendance(db: Session, record_id: uuid.UUID, actor: User) -> None:
    """Hard delete. Allowed on archived projects; only admins reach this."""
    record = get_attendance(db, record_id)
    _audit(db, record, "DELETE", actor, {"before": _snapshot(record)})
    db.delete(record)
    db.commit()

    logger.info("attendance_deleted", attendance_id=str(record_id), actor_id=str(actor.id))

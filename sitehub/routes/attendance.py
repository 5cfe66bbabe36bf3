"""
Attendance API routes.
Employee and day-labour attendance per project and day.
"""
import csv
import io
import math
import uuid
import datetime as dt
from typing import Dict, Iterable, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..models.models import AttendanceRecord, FileObject, User
from ..schemas.attendance import (
    AttendanceCreate,
    AttendanceFilters,
    AttendanceStatus,
    AttendanceUpdate,
)
from ..services import attendance_store
from ..services.permissions import (
    ATTENDANCE_APPROVE_ROLES,
    ATTENDANCE_DELETE_ROLES,
    ATTENDANCE_WRITE_ROLES,
)
from ..services.time_rules import today_local


router = APIRouter(prefix="/api/attendance", tags=["attendance"])


def _user_brief(u: Optional[User]) -> Optional[dict]:
    if not u:
        return None
    return {"id": str(u.id), "name": u.name or u.username, "email": u.email}


def _related(db: Session, records: Iterable[AttendanceRecord]) -> Tuple[Dict[uuid.UUID, User], Dict[str, FileObject]]:
    """Batch-load users and files referenced by the given records."""
    user_ids = set()
    file_ids = set()
    for r in records:
        if r.employee_id:
            user_ids.add(r.employee_id)
        if r.approved_by:
            user_ids.add(r.approved_by)
        for f in r.attachments or []:
            file_ids.add(uuid.UUID(str(f)))
    users = {u.id: u for u in db.query(User).filter(User.id.in_(list(user_ids))).all()} if user_ids else {}
    files = {str(f.id): f for f in db.query(FileObject).filter(FileObject.id.in_(list(file_ids))).all()} if file_ids else {}
    return users, files


def _serialize_attendance(r: AttendanceRecord, users: Dict[uuid.UUID, User], files: Dict[str, FileObject]) -> dict:
    attachments = []
    for file_id in r.attachments or []:
        f = files.get(str(file_id))
        attachments.append({
            "id": str(file_id),
            "originalName": f.original_name if f else None,
            "contentType": f.content_type if f else None,
            "size": f.size_bytes if f else None,
        })
    return {
        "id": str(r.id),
        "employeeId": str(r.employee_id) if r.employee_id else None,
        "employee": _user_brief(users.get(r.employee_id)) if r.employee_id else None,
        "employeeName": r.employee_name,
        "mobileNumber": r.mobile_number,
        "projectId": str(r.project_id),
        "projectName": r.project_name,
        "labourType": r.labour_type,
        "date": r.date.isoformat() if r.date else None,
        "timeIn": r.time_in,
        "timeOut": r.time_out,
        "status": r.status,
        "hours": r.hours,
        "overtimeHours": r.overtime_hours,
        "notes": r.notes,
        "attachments": attachments,
        "approvedBy": _user_brief(users.get(r.approved_by)) if r.approved_by else None,
        "approvedAt": r.approved_at.isoformat() if r.approved_at else None,
        "isApproved": r.is_approved,
        "createdBy": str(r.created_by) if r.created_by else None,
        "createdAt": r.created_at.isoformat() if r.created_at else None,
        "updatedAt": r.updated_at.isoformat() if r.updated_at else None,
    }


def _serialize_many(db: Session, records: List[AttendanceRecord]) -> List[dict]:
    users, files = _related(db, records)
    return [_serialize_attendance(r, users, files) for r in records]


def _serialize_one(db: Session, record: AttendanceRecord) -> dict:
    return _serialize_many(db, [record])[0]


def attendance_filters(
    project_id: Optional[uuid.UUID] = Query(None, alias="projectId"),
    status: Optional[AttendanceStatus] = None,
    employee_name: Optional[str] = Query(None, alias="employeeName"),
    search: Optional[str] = None,
    date: Optional[dt.date] = None,
    date_from: Optional[dt.date] = Query(None, alias="dateFrom"),
    date_to: Optional[dt.date] = Query(None, alias="dateTo"),
    is_approved: Optional[bool] = Query(None, alias="isApproved"),
) -> AttendanceFilters:
    return AttendanceFilters(
        project_id=project_id,
        status=status,
        employee_name=(employee_name or "").strip() or None,
        search=(search or "").strip() or None,
        date=date,
        date_from=date_from,
        date_to=date_to,
        is_approved=is_approved,
    )


# ---------- READ ----------
@router.get("")
def list_attendance(
    page: int = 1,
    limit: int = 10,
    filters: AttendanceFilters = Depends(attendance_filters),
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    """
    List attendance with pagination

    Args:
        page: Page number (1-indexed)
        limit: Items per page (default 10, max from settings)
    """
    page, limit = attendance_store.normalize_page(page, limit)
    rows, total = attendance_store.list_attendance(db, filters, page=page, limit=limit)
    return {
        "success": True,
        "count": len(rows),
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit) if limit else 0,
        "data": _serialize_many(db, rows),
    }


@router.get("/export.csv")
def export_attendance(
    filters: AttendanceFilters = Depends(attendance_filters),
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    # Materialize before streaming; the session closes with the request
    rows = list(attendance_store.export_rows(db, filters))

    def _stream():
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(attendance_store.EXPORT_COLUMNS)
        for row in rows:
            writer.writerow(row)
            if buf.tell() > 64 * 1024:
                yield buf.getvalue()
                buf.seek(0)
                buf.truncate(0)
        yield buf.getvalue()

    filename = f"attendance_records_{today_local().isoformat()}.csv"
    return StreamingResponse(
        _stream(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/project/{project_id}")
def list_project_attendance(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    rows = attendance_store.list_by_project(db, project_id)
    return {"success": True, "count": len(rows), "data": _serialize_many(db, rows)}


@router.get("/{attendance_id}")
def get_attendance(
    attendance_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    record = attendance_store.get_attendance(db, attendance_id)
    return {"success": True, "data": _serialize_one(db, record)}


# ---------- WRITE ----------
@router.post("", status_code=201)
def create_attendance(
    payload: AttendanceCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*ATTENDANCE_WRITE_ROLES)),
):
    record = attendance_store.create_attendance(db, payload, actor=user)
    return {"success": True, "data": _serialize_one(db, record)}


@router.put("/{attendance_id}")
def update_attendance(
    attendance_id: uuid.UUID,
    payload: AttendanceUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*ATTENDANCE_WRITE_ROLES)),
):
    record = attendance_store.update_attendance(db, attendance_id, payload, actor=user)
    return {"success": True, "data": _serialize_one(db, record)}


@router.post("/{attendance_id}/approve")
def approve_attendance(
    attendance_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*ATTENDANCE_APPROVE_ROLES)),
):
    record = attendance_store.approve_attendance(db, attendance_id, actor=user)
    return {"success": True, "data": _serialize_one(db, record)}


@router.delete("/{attendance_id}")
def delete_attendance(
    attendance_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles(*ATTENDANCE_DELETE_ROLES)),
):
    attendance_store.delete_attendance(db, attendance_id, actor=user)
    return {"success": True, "message": "Attendance record deleted successfully"}

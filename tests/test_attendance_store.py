import uuid
from datetime import date, datetime, timedelta, timezone

import pytest

from sitehub.exceptions import (
    ArchivedProjectError,
    BadRequestError,
    DuplicateAttendanceError,
    NotFoundError,
)
from sitehub.models.models import AttendanceRecord, AuditLog
from sitehub.schemas.attendance import AttendanceCreate, AttendanceFilters, AttendanceUpdate
from sitehub.services import attendance_store
from sitehub.services.audit import get_audit_logs
from sitehub.services.permissions import ADMIN, EMPLOYEE, MANAGER, SITE_SUPERVISOR
from sitehub.services.time_rules import today_local

WORK_DAY = date(2024, 1, 10)


def labour(project, name="Ravi Kumar", on_date=WORK_DAY, **extra) -> AttendanceCreate:
    return AttendanceCreate(employee_name=name, project_id=project.id, date=on_date, **extra)


def employee(user, project, on_date=WORK_DAY, **extra) -> AttendanceCreate:
    return AttendanceCreate(
        employee_id=user.id, employee_name=user.name, project_id=project.id, date=on_date, **extra
    )


class TestLabourIdentity:
    """Day labourers are keyed by name, day and project"""

    def test_second_row_same_name_day_project_is_rejected(self, db, users, projects):
        actor = users[SITE_SUPERVISOR]
        first = attendance_store.create_attendance(db, labour(projects["P1"]), actor)

        with pytest.raises(DuplicateAttendanceError) as exc:
            attendance_store.create_attendance(db, labour(projects["P1"]), actor)

        assert exc.value.status_code == 409
        assert exc.value.existing_record_id == str(first.id)
        assert 'Attendance for "Ravi Kumar" on this date in this project already exists' in exc.value.message
        assert db.query(AttendanceRecord).count() == 1

    def test_same_name_other_project_is_allowed(self, db, users, projects):
        actor = users[SITE_SUPERVISOR]
        attendance_store.create_attendance(db, labour(projects["P1"]), actor)
        attendance_store.create_attendance(db, labour(projects["P2"]), actor)

        assert db.query(AttendanceRecord).count() == 2

    def test_other_name_same_project_is_allowed(self, db, users, projects):
        actor = users[SITE_SUPERVISOR]
        attendance_store.create_attendance(db, labour(projects["P1"], name="Ravi Kumar"), actor)
        attendance_store.create_attendance(db, labour(projects["P1"], name="Ravi K"), actor)

        assert db.query(AttendanceRecord).count() == 2

    def test_same_name_next_day_is_allowed(self, db, users, projects):
        actor = users[SITE_SUPERVISOR]
        attendance_store.create_attendance(db, labour(projects["P1"]), actor)
        attendance_store.create_attendance(db, labour(projects["P1"], on_date=WORK_DAY + timedelta(days=1)), actor)

        assert db.query(AttendanceRecord).count() == 2

    def test_name_is_trimmed_before_matching(self, db, users, projects):
        actor = users[SITE_SUPERVISOR]
        attendance_store.create_attendance(db, labour(projects["P1"], name="Ravi Kumar"), actor)

        with pytest.raises(DuplicateAttendanceError):
            attendance_store.create_attendance(db, labour(projects["P1"], name="  Ravi Kumar "), actor)


class TestEmployeeIdentity:
    """Employees are keyed by user and day, whatever the project"""

    def test_second_row_same_day_is_rejected_across_projects(self, db, users, projects):
        actor = users[MANAGER]
        worker = users[EMPLOYEE]
        first = attendance_store.create_attendance(db, employee(worker, projects["P1"]), actor)

        with pytest.raises(DuplicateAttendanceError) as exc:
            attendance_store.create_attendance(db, employee(worker, projects["P2"]), actor)

        assert exc.value.message == "Attendance for this employee on this date already exists"
        assert exc.value.existing_record_id == str(first.id)

    def test_different_days_are_allowed(self, db, users, projects):
        actor = users[MANAGER]
        worker = users[EMPLOYEE]
        attendance_store.create_attendance(db, employee(worker, projects["P1"]), actor)
        attendance_store.create_attendance(db, employee(worker, projects["P1"], on_date=WORK_DAY - timedelta(days=1)), actor)

        assert db.query(AttendanceRecord).filter(AttendanceRecord.employee_id == worker.id).count() == 2

    def test_employee_and_labourer_with_same_name_coexist(self, db, users, projects):
        actor = users[MANAGER]
        worker = users[EMPLOYEE]
        attendance_store.create_attendance(db, employee(worker, projects["P1"]), actor)
        attendance_store.create_attendance(db, labour(projects["P1"], name=worker.name), actor)

        assert db.query(AttendanceRecord).count() == 2

    def test_unknown_employee_is_not_found(self, db, users, projects):
        payload = AttendanceCreate(employee_id=uuid.uuid4(), employee_name="Ghost", project_id=projects["P1"].id)

        with pytest.raises(NotFoundError):
            attendance_store.create_attendance(db, payload, users[ADMIN])


class TestIndexEnforcement:
    """The unique indexes hold even when the pre-check is skipped"""

    def test_labour_duplicate_from_index(self, db, users, projects, monkeypatch):
        actor = users[SITE_SUPERVISOR]
        attendance_store.create_attendance(db, labour(projects["P1"]), actor)
        monkeypatch.setattr(attendance_store, "find_duplicate", lambda *args, **kwargs: None)

        with pytest.raises(DuplicateAttendanceError) as exc:
            attendance_store.create_attendance(db, labour(projects["P1"]), actor)

        assert "in this project already exists" in exc.value.message
        assert db.query(AttendanceRecord).count() == 1

    def test_employee_duplicate_from_index(self, db, users, projects, monkeypatch):
        actor = users[SITE_SUPERVISOR]
        worker = users[EMPLOYEE]
        attendance_store.create_attendance(db, employee(worker, projects["P1"]), actor)
        monkeypatch.setattr(attendance_store, "find_duplicate", lambda *args, **kwargs: None)

        with pytest.raises(DuplicateAttendanceError) as exc:
            attendance_store.create_attendance(db, employee(worker, projects["P2"]), actor)

        assert exc.value.message == "Attendance for this employee on this date already exists"
        # The session is usable after the rollback
        assert db.query(AttendanceRecord).count() == 1

    def test_index_rejection_writes_no_audit_entry(self, db, users, projects, monkeypatch):
        actor = users[SITE_SUPERVISOR]
        attendance_store.create_attendance(db, labour(projects["P1"]), actor)
        monkeypatch.setattr(attendance_store, "find_duplicate", lambda *args, **kwargs: None)

        with pytest.raises(DuplicateAttendanceError):
            attendance_store.create_attendance(db, labour(projects["P1"]), actor)

        assert db.query(AuditLog).filter(AuditLog.action == "CREATE").count() == 1

    def test_update_duplicate_from_index(self, db, users, projects, monkeypatch):
        actor = users[SITE_SUPERVISOR]
        attendance_store.create_attendance(db, labour(projects["P1"], name="Ravi Kumar"), actor)
        other_id = attendance_store.create_attendance(db, labour(projects["P1"], name="Ravi K"), actor).id
        monkeypatch.setattr(attendance_store, "find_duplicate", lambda *args, **kwargs: None)

        with pytest.raises(DuplicateAttendanceError) as exc:
            attendance_store.update_attendance(db, other_id, AttendanceUpdate(employee_name="Ravi Kumar"), actor)

        assert 'Attendance for "Ravi Kumar"' in exc.value.message
        assert db.get(AttendanceRecord, other_id).employee_name == "Ravi K"
        assert db.query(AuditLog).filter(AuditLog.action == "UPDATE").count() == 0


class TestArchivedProject:
    """Attendance on an archived project is read-only, except for admin delete"""

    def _archive(self, db, project):
        project.archived_at = datetime(2024, 2, 1, tzinfo=timezone.utc)
        db.commit()

    def test_update_on_archived_project(self, db, users, projects):
        actor = users[MANAGER]
        record_id = attendance_store.create_attendance(db, labour(projects["P1"], hours=4), actor).id
        self._archive(db, projects["P1"])

        with pytest.raises(ArchivedProjectError) as exc:
            attendance_store.update_attendance(db, record_id, AttendanceUpdate(hours=8), actor)

        assert exc.value.status_code == 409
        assert db.get(AttendanceRecord, record_id).hours == 4

    def test_move_onto_archived_project(self, db, users, projects):
        actor = users[MANAGER]
        record_id = attendance_store.create_attendance(db, labour(projects["P1"]), actor).id

        with pytest.raises(ArchivedProjectError):
            attendance_store.update_attendance(db, record_id, AttendanceUpdate(project_id=projects["OLD"].id), actor)

        assert db.get(AttendanceRecord, record_id).project_id == projects["P1"].id

    def test_approve_on_archived_project(self, db, users, projects):
        record_id = attendance_store.create_attendance(db, labour(projects["P1"]), users[SITE_SUPERVISOR]).id
        self._archive(db, projects["P1"])

        with pytest.raises(ArchivedProjectError):
            attendance_store.approve_attendance(db, record_id, users[MANAGER])

        assert db.get(AttendanceRecord, record_id).is_approved is False

    def test_admin_can_still_delete(self, db, users, projects):
        record_id = attendance_store.create_attendance(db, labour(projects["P1"]), users[SITE_SUPERVISOR]).id
        self._archive(db, projects["P1"])

        attendance_store.delete_attendance(db, record_id, users[ADMIN])

        assert db.get(AttendanceRecord, record_id) is None


class TestCreate:
    def test_defaults(self, db, users, projects):
        actor = users[SITE_SUPERVISOR]
        record = attendance_store.create_attendance(
            db, AttendanceCreate(employee_name="Sita Devi", project_id=projects["P1"].id), actor
        )

        assert record.date == today_local()
        assert record.status == "present"
        assert record.hours == 0
        assert record.overtime_hours == 0
        assert record.is_approved is False
        assert record.attachments == []
        assert record.employee_id is None
        assert record.project_name == "Riverside Tower"
        assert record.created_by == actor.id

    def test_unknown_project_is_not_found(self, db, users):
        payload = AttendanceCreate(employee_name="Sita Devi", project_id=uuid.uuid4())

        with pytest.raises(NotFoundError):
            attendance_store.create_attendance(db, payload, users[ADMIN])

    def test_archived_project_is_read_only(self, db, users, projects):
        with pytest.raises(ArchivedProjectError):
            attendance_store.create_attendance(db, labour(projects["OLD"]), users[ADMIN])

    def test_attachments_are_checked_and_deduplicated(self, db, users, projects, files):
        ids = [files[1].id, files[0].id, files[1].id]
        record = attendance_store.create_attendance(db, labour(projects["P1"], attachments=ids), users[ADMIN])

        assert record.attachments == [str(files[1].id), str(files[0].id)]

    def test_unknown_attachment_is_rejected(self, db, users, projects):
        with pytest.raises(BadRequestError):
            attendance_store.create_attendance(db, labour(projects["P1"], attachments=[uuid.uuid4()]), users[ADMIN])

    def test_create_is_audited(self, db, users, projects):
        actor = users[SITE_SUPERVISOR]
        record = attendance_store.create_attendance(db, labour(projects["P1"]), actor)

        logs = get_audit_logs(db, entity_type="attendance", entity_id=record.id)
        assert len(logs) == 1
        assert logs[0].action == "CREATE"
        assert logs[0].actor_role == SITE_SUPERVISOR
        assert logs[0].changes_json["after"]["employee_name"] == "Ravi Kumar"
        assert logs[0].integrity_hash


class TestUpdate:
    def test_partial_update_keeps_other_fields(self, db, users, projects):
        actor = users[SITE_SUPERVISOR]
        record = attendance_store.create_attendance(db, labour(projects["P1"], hours=8, notes="Masonry"), actor)

        updated = attendance_store.update_attendance(
            db, record.id, AttendanceUpdate(overtime_hours=2, status="overtime"), actor
        )

        assert updated.overtime_hours == 2
        assert updated.status == "overtime"
        assert updated.hours == 8
        assert updated.notes == "Masonry"

    def test_update_onto_existing_identity_is_rejected(self, db, users, projects):
        actor = users[SITE_SUPERVISOR]
        ravi = attendance_store.create_attendance(db, labour(projects["P1"], name="Ravi Kumar"), actor)
        other = attendance_store.create_attendance(db, labour(projects["P1"], name="Ravi K"), actor)

        with pytest.raises(DuplicateAttendanceError) as exc:
            attendance_store.update_attendance(db, other.id, AttendanceUpdate(employee_name="Ravi Kumar"), actor)

        assert exc.value.existing_record_id == str(ravi.id)

    def test_update_keeping_own_identity_is_allowed(self, db, users, projects):
        actor = users[SITE_SUPERVISOR]
        record = attendance_store.create_attendance(db, labour(projects["P1"]), actor)

        updated = attendance_store.update_attendance(
            db, record.id, AttendanceUpdate(employee_name="Ravi Kumar", time_in="8:30"), actor
        )

        assert updated.time_in == "8:30"

    def test_moving_project_updates_snapshot_name(self, db, users, projects):
        actor = users[MANAGER]
        record = attendance_store.create_attendance(db, labour(projects["P1"]), actor)

        updated = attendance_store.update_attendance(db, record.id, AttendanceUpdate(project_id=projects["P2"].id), actor)

        assert updated.project_id == projects["P2"].id
        assert updated.project_name == "Harbour Warehouse"

    def test_update_is_audited_with_diff(self, db, users, projects):
        actor = users[MANAGER]
        record = attendance_store.create_attendance(db, labour(projects["P1"], hours=4), actor)
        attendance_store.update_attendance(db, record.id, AttendanceUpdate(hours=6), actor)

        update_log = [log for log in get_audit_logs(db, entity_id=record.id) if log.action == "UPDATE"][0]
        assert update_log.changes_json["hours"] == {"before": 4, "after": 6}

    def test_missing_record_is_not_found(self, db, users):
        with pytest.raises(NotFoundError):
            attendance_store.update_attendance(db, uuid.uuid4(), AttendanceUpdate(hours=1), users[ADMIN])


class TestApproveAndDelete:
    def test_approve_sets_approver(self, db, users, projects):
        record = attendance_store.create_attendance(db, labour(projects["P1"]), users[SITE_SUPERVISOR])

        approved = attendance_store.approve_attendance(db, record.id, users[MANAGER])

        assert approved.is_approved is True
        assert approved.approved_by == users[MANAGER].id
        assert approved.approved_at is not None

    def test_approve_twice_is_rejected(self, db, users, projects):
        record = attendance_store.create_attendance(db, labour(projects["P1"]), users[SITE_SUPERVISOR])
        attendance_store.approve_attendance(db, record.id, users[MANAGER])

        with pytest.raises(BadRequestError):
            attendance_store.approve_attendance(db, record.id, users[MANAGER])

    def test_delete_frees_the_identity(self, db, users, projects):
        actor = users[ADMIN]
        record_id = attendance_store.create_attendance(db, labour(projects["P1"]), actor).id
        attendance_store.delete_attendance(db, record_id, actor)

        again = attendance_store.create_attendance(db, labour(projects["P1"]), actor)

        assert again.id != record_id
        assert [log.action for log in get_audit_logs(db, entity_id=record_id)].count("DELETE") == 1


class TestListing:
    def _seed(self, db, users, projects):
        actor = users[SITE_SUPERVISOR]
        attendance_store.create_attendance(db, labour(projects["P1"], name="Ravi Kumar", labour_type="Mason"), actor)
        attendance_store.create_attendance(db, labour(projects["P1"], name="Sita Devi", status="absent"), actor)
        attendance_store.create_attendance(
            db, labour(projects["P2"], name="Arjun Das", on_date=WORK_DAY - timedelta(days=1)), actor
        )

    def test_newest_day_first(self, db, users, projects):
        self._seed(db, users, projects)

        rows, total = attendance_store.list_attendance(db, AttendanceFilters(), page=1, limit=10)

        assert total == 3
        assert rows[-1].employee_name == "Arjun Das"

    def test_filters(self, db, users, projects):
        self._seed(db, users, projects)

        rows, total = attendance_store.list_attendance(db, AttendanceFilters(project_id=projects["P1"].id, status="absent"))
        assert total == 1 and rows[0].employee_name == "Sita Devi"

        rows, total = attendance_store.list_attendance(db, AttendanceFilters(search="mason"))
        assert [r.employee_name for r in rows] == ["Ravi Kumar"]

        rows, total = attendance_store.list_attendance(db, AttendanceFilters(date_to=WORK_DAY - timedelta(days=1)))
        assert [r.employee_name for r in rows] == ["Arjun Das"]

    def test_pagination(self, db, users, projects):
        self._seed(db, users, projects)

        rows, total = attendance_store.list_attendance(db, AttendanceFilters(), page=2, limit=2)

        assert total == 3
        assert len(rows) == 1

    def test_normalize_page_clamps(self):
        assert attendance_store.normalize_page(0, 0) == (1, 10)
        assert attendance_store.normalize_page(3, 10_000) == (3, 200)

    def test_list_by_project(self, db, users, projects):
        self._seed(db, users, projects)

        rows = attendance_store.list_by_project(db, projects["P2"].id)

        assert [r.employee_name for r in rows] == ["Arjun Das"]
        with pytest.raises(NotFoundError):
            attendance_store.list_by_project(db, uuid.uuid4())

    def test_export_rows(self, db, users, projects):
        self._seed(db, users, projects)

        rows = list(attendance_store.export_rows(db, AttendanceFilters(project_id=projects["P2"].id)))

        assert len(rows) == 1
        assert len(rows[0]) == len(attendance_store.EXPORT_COLUMNS)
        assert rows[0][0] == "Arjun Das"
        assert rows[0][2] == "Harbour Warehouse"

from typing import Optional

from fastapi import HTTPException, status


class BaseAppException(HTTPException):
    def __init__(self, status_code: int, detail):
        super().__init__(status_code=status_code, detail=detail)


class NotFoundError(BaseAppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class BadRequestError(BaseAppException):
    def __init__(self, detail: str = "Bad request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class DuplicateAttendanceError(BaseAppException):
    """Same person already has attendance for that day (and project, for labour)."""

    def __init__(self, message: str, existing_record_id: Optional[str] = None):
        self.message = message
        self.existing_record_id = existing_record_id
        detail = {"error": "Duplicate attendance record", "message": message}
        if existing_record_id:
            detail["existingRecordId"] = existing_record_id
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class ArchivedProjectError(BaseAppException):
    def __init__(self, detail: str = "Project is archived; its attendance is read-only"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)

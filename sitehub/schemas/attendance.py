import re
import uuid
import datetime as dt
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
import enum

from ..services.time_rules import is_valid_hhmm, to_local_date


# Ten ASCII digits, no country code
MOBILE_PATTERN = re.compile(r"[0-9]{10}")


class AttendanceStatus(str, enum.Enum):
    present = "present"
    absent = "absent"
    late = "late"
    half_day = "half_day"
    overtime = "overtime"


def _blank_to_none(v):
    if v is None:
        return None
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


def _check_hhmm(v: Optional[str]) -> Optional[str]:
    if v is not None and not is_valid_hhmm(v):
        raise ValueError("Time must be in HH:MM format")
    return v


def _check_mobile(v: Optional[str]) -> Optional[str]:
    if v is not None and not MOBILE_PATTERN.fullmatch(v):
        raise ValueError("Mobile number must be 10 digits")
    return v


class _CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class AttendanceCreate(_CamelModel):
    employee_id: Optional[uuid.UUID] = None
    employee_name: str = Field(min_length=2, max_length=100)
    mobile_number: Optional[str] = None
    project_id: uuid.UUID
    labour_type: Optional[str] = Field(default=None, min_length=2, max_length=50)
    date: Optional[dt.date] = None
    time_in: Optional[str] = None
    time_out: Optional[str] = None
    status: AttendanceStatus = AttendanceStatus.present
    hours: float = Field(default=0, ge=0, le=24, allow_inf_nan=False)
    overtime_hours: float = Field(default=0, ge=0, allow_inf_nan=False)
    notes: Optional[str] = Field(default=None, max_length=500)
    attachments: List[uuid.UUID] = Field(default_factory=list)

    @field_validator("employee_id", "mobile_number", "labour_type", "time_in", "time_out", "notes", mode="before")
    @classmethod
    def empty_str_to_none(cls, v):
        return _blank_to_none(v)

    @field_validator("employee_name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, v):
        v = _blank_to_none(v)
        if v is None:
            return None
        try:
            return to_local_date(v)
        except (TypeError, ValueError):
            raise ValueError("Date must be a valid date")

    @field_validator("status", mode="before")
    @classmethod
    def default_status(cls, v):
        return _blank_to_none(v) or AttendanceStatus.present

    @field_validator("hours", "overtime_hours", mode="before")
    @classmethod
    def default_zero(cls, v):
        return 0 if _blank_to_none(v) is None else v

    @field_validator("attachments", mode="before")
    @classmethod
    def default_attachments(cls, v):
        return [] if v is None else v

    @field_validator("time_in", "time_out")
    @classmethod
    def check_time(cls, v):
        return _check_hhmm(v)

    @field_validator("mobile_number")
    @classmethod
    def check_mobile(cls, v):
        return _check_mobile(v)


class AttendanceUpdate(_CamelModel):
    """Partial update; only fields present in the request body are applied."""
    employee_id: Optional[uuid.UUID] = None
    employee_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    mobile_number: Optional[str] = None
    project_id: Optional[uuid.UUID] = None
    labour_type: Optional[str] = Field(default=None, min_length=2, max_length=50)
    date: Optional[dt.date] = None
    time_in: Optional[str] = None
    time_out: Optional[str] = None
    status: Optional[AttendanceStatus] = None
    hours: Optional[float] = Field(default=None, ge=0, le=24, allow_inf_nan=False)
    overtime_hours: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    notes: Optional[str] = Field(default=None, max_length=500)
    attachments: Optional[List[uuid.UUID]] = None

    @field_validator("employee_id", "mobile_number", "labour_type", "time_in", "time_out", "notes", mode="before")
    @classmethod
    def empty_str_to_none(cls, v):
        return _blank_to_none(v)

    @field_validator("employee_name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, v):
        v = _blank_to_none(v)
        if v is None:
            return None
        try:
            return to_local_date(v)
        except (TypeError, ValueError):
            raise ValueError("Date must be a valid date")

    @field_validator("time_in", "time_out")
    @classmethod
    def check_time(cls, v):
        return _check_hhmm(v)

    @field_validator("mobile_number")
    @classmethod
    def check_mobile(cls, v):
        return _check_mobile(v)

    def changes(self) -> dict:
        """Fields the client actually sent. Required columns never get None."""
        data = self.model_dump(exclude_unset=True)
        for required in ("employee_name", "project_id", "date", "status", "hours", "overtime_hours", "attachments"):
            if required in data and data[required] is None:
                data.pop(required)
        return data


class AttendanceFilters(BaseModel):
    project_id: Optional[uuid.UUID] = None
    status: Optional[AttendanceStatus] = None
    employee_name: Optional[str] = None
    search: Optional[str] = None
    date: Optional[dt.date] = None
    date_from: Optional[dt.date] = None
    date_to: Optional[dt.date] = None
    is_approved: Optional[bool] = None

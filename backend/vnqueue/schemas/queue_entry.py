import re
from datetime import datetime, time, timezone
from enum import Enum
from typing import Optional, Union
from zoneinfo import ZoneInfo

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from vnqueue.core.config import settings

_CLOCK_TIME = re.compile(r"^\d{1,2}:\d{2}(:\d{2})?$")


class QueueStatus(str, Enum):
    WAITING = "waiting"
    CALLED = "called"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class QueueEntry(BaseModel):
    """
    Full snapshot of one patient's ticket.

    Accepts both the patient payload (`vn`, `department`, `yourPosition`) and the
    staff list payload (`queueId`, `queueNumber`); a snapshot always replaces any
    previously held copy in full.
    """
    id: Optional[Union[int, str]] = Field(default=None, validation_alias=AliasChoices("queueId", "id"))
    visit_number: str = Field(validation_alias=AliasChoices("vn", "visitNumber", "visit_number"))
    display_number: Optional[str] = Field(default=None, validation_alias=AliasChoices("queueNumber", "displayNumber", "display_number"))
    patient_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("patientName", "patient_name"))
    phone_number: Optional[str] = Field(default=None, validation_alias=AliasChoices("phoneNumber", "phone", "phone_number"))
    department_id: Optional[Union[int, str]] = Field(default=None, validation_alias=AliasChoices("departmentId", "department_id"))
    department_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("departmentName", "department", "department_name"))
    department_location: Optional[str] = Field(default=None, validation_alias=AliasChoices("departmentLocation", "department_location"))
    status: QueueStatus = QueueStatus.WAITING
    is_skipped: bool = Field(default=False, validation_alias=AliasChoices("isSkipped", "is_skipped"))
    position: Optional[int] = Field(default=None, ge=0, validation_alias=AliasChoices("yourPosition", "positionAmongWaiting", "position"))
    current_queue: Optional[str] = Field(default=None, validation_alias=AliasChoices("currentQueue", "current_queue"))
    estimated_time: Optional[str] = Field(default=None, validation_alias=AliasChoices("estimatedTime", "estimated_time"))
    priority_score: float = Field(default=0.0, validation_alias=AliasChoices("priorityScore", "priority_score"))
    issued_time: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("issuedTime", "issued_time"))
    skipped_time: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("skippedTime", "skipped_time"))
    updated_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("updatedAt", "updated_at"))

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def fold_legacy_skipped_status(cls, data):
        # Older service builds report skipping as a status instead of the isSkipped flag
        if isinstance(data, dict) and str(data.get("status", "")).lower() == "skipped":
            data = dict(data)
            data["status"] = QueueStatus.WAITING.value
            data["isSkipped"] = True
            data.pop("is_skipped", None)
        return data

    @field_validator("status", mode="before")
    @classmethod
    def lowercase_status(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("priority_score", mode="before")
    @classmethod
    def default_priority(cls, v):
        return v or 0.0

    @field_validator("issued_time", "skipped_time", "updated_at", mode="before")
    @classmethod
    def parse_clock_time(cls, v):
        # The patient payload sends a bare "HH:MM" for today's issue time
        if isinstance(v, str) and _CLOCK_TIME.match(v.strip()):
            parts = [int(p) for p in v.strip().split(":")]
            tz = ZoneInfo(settings.VN_TIMEZONE)
            return datetime.combine(datetime.now(tz).date(), time(*parts), tzinfo=tz)
        if v == "":
            return None
        return v

    @field_validator("issued_time", "skipped_time", "updated_at")
    @classmethod
    def assume_hospital_timezone(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=ZoneInfo(settings.VN_TIMEZONE))
        return v

    @property
    def is_active(self) -> bool:
        """Called or in progress: the department's single active ticket."""
        return self.status in (QueueStatus.CALLED, QueueStatus.IN_PROGRESS)

    @property
    def is_waiting(self) -> bool:
        return self.status == QueueStatus.WAITING and not self.is_skipped

    def sort_time(self) -> datetime:
        return self.issued_time or datetime.max.replace(tzinfo=timezone.utc)

"""
Planning domain models and the wire payloads exchanged with the backend.
"""

from datetime import date, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from planning.working_days import working_days


class WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )


class ShiftType(StrEnum):
    MAIN_24H = "garde_24h"
    MAIN_48H = "garde_48h"
    REINFORCEMENT = "renfort"
    OTHER = "autre"

    @classmethod
    def _missing_(cls, value: object) -> "ShiftType | None":
        if value == "TYPE_RENFORT":
            return cls.REINFORCEMENT
        return None


class ShiftStatus(StrEnum):
    DRAFT = "draft"
    VALIDATED = "validated"
    TO_REPLACE_ABSENCE = "to_replace_absence"
    TO_REPLACE_MEETING_CONFLICT = "to_replace_rdv"


class ChangeKind(StrEnum):
    UPDATE = "update"
    ASSIGN = "assign"
    DELETE = "delete"


class WorkerRef(WireModel):
    id: str
    full_name: str = ""
    color: str | None = None


class LocationRef(WireModel):
    id: str | None = None
    name: str | None = None
    color: str | None = None


class ShiftAssignment(WireModel):
    id: str
    start_at: datetime | None = None
    end_at: datetime | None = None
    type: ShiftType = ShiftType.OTHER
    status: ShiftStatus = ShiftStatus.DRAFT
    assigned_worker_id: str | None = None
    worker: WorkerRef | None = None
    location_id: str | None = None
    location: LocationRef | None = None
    comment: str | None = None
    working_days_count: int | None = None
    is_segmented: bool = False
    segment_number: int | None = None
    total_segments: int | None = None

    @model_validator(mode="after")
    def _derive(self) -> "ShiftAssignment":
        if self.assigned_worker_id is None and self.worker is not None:
            self.assigned_worker_id = self.worker.id
        if self.location_id is None and self.location is not None:
            self.location_id = self.location.id
        # never trust a stored count over the displayed duration
        if self.start_at is not None and self.end_at is not None:
            self.working_days_count = working_days(self.start_at, self.end_at)
        return self

    @property
    def is_assigned(self) -> bool:
        return self.assigned_worker_id is not None

    @property
    def is_reinforcement(self) -> bool:
        return self.type == ShiftType.REINFORCEMENT


class Absence(WireModel):
    id: str
    worker_id: str | None = None
    worker: WorkerRef | None = None
    start_at: date
    end_at: date
    type_code: str | None = None
    type_label: str | None = None

    @model_validator(mode="after")
    def _derive(self) -> "Absence":
        if self.worker_id is None and self.worker is not None:
            self.worker_id = self.worker.id
        return self


class Meeting(WireModel):
    id: str
    title: str = ""
    start_at: datetime
    end_at: datetime
    participant_ids: list[str] = Field(default_factory=list)
    participants: list[WorkerRef] = Field(default_factory=list)

    @model_validator(mode="after")
    def _derive(self) -> "Meeting":
        if not self.participant_ids and self.participants:
            self.participant_ids = [p.id for p in self.participants]
        return self


class OnCallPeriod(WireModel):
    id: str
    worker_id: str | None = None
    worker: WorkerRef | None = None
    start_at: datetime
    end_at: datetime
    label: str = ""

    @model_validator(mode="after")
    def _derive(self) -> "OnCallPeriod":
        if self.worker_id is None and self.worker is not None:
            self.worker_id = self.worker.id
        return self


class FixedRestDay(WireModel):
    id: str
    worker_id: str | None = None
    day: date = Field(alias="date")
    notes: str | None = None


class MonthData(WireModel):
    shifts: list[ShiftAssignment] = Field(default_factory=list)
    absences: list[Absence] = Field(default_factory=list)
    meetings: list[Meeting] = Field(default_factory=list)
    on_call_periods: list[OnCallPeriod] = Field(default_factory=list)
    fixed_rest_days: list[FixedRestDay] = Field(default_factory=list)

    def shift(self, shift_id: str) -> ShiftAssignment | None:
        return next((s for s in self.shifts if s.id == shift_id), None)


class CacheEntry(WireModel):
    month_key: str
    data: MonthData
    fetched_at: datetime
    stale_after: datetime


class PendingChange(WireModel):
    target_id: str
    kind: ChangeKind
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class BatchWarning(WireModel):
    type: str = "warning"
    message: str
    severity: Literal["info", "warning", "error"] = "warning"
    target_id: str | None = None


class BatchResult(WireModel):
    success: bool = True
    warnings: list[BatchWarning] = Field(default_factory=list)
    created: int | None = None
    updated: int | None = None
    deleted: int | None = None
    processed: int | None = None
    validated: int | None = None
    message: str | None = None

    @field_validator("warnings", mode="before")
    @classmethod
    def _plain_warnings(cls, value: Any) -> Any:
        # some endpoints send bare strings
        if isinstance(value, list):
            return [{"message": w} if isinstance(w, str) else w for w in value]
        return value

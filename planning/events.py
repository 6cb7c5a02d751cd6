"""
Month data -> ordered, render-ready calendar items.

Stacking precedence is fixed: absences, then shifts, then meetings, then
fixed rest days. Output depends only on the input, so transforming the same
data twice yields identical items.
"""

from collections.abc import Iterable
from datetime import date, datetime, time, timedelta
from enum import IntEnum, StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from planning.models import (
    Absence,
    FixedRestDay,
    Meeting,
    MonthData,
    OnCallPeriod,
    ShiftAssignment,
    ShiftStatus,
)
from planning.working_days import duration_hours, working_days


class ViewMode(StrEnum):
    MONTH = "month"
    WEEK = "week"
    DAY = "day"


class ItemKind(StrEnum):
    ABSENCE = "absence"
    SHIFT = "shift"
    MEETING = "meeting"
    REST_DAY = "rest_day"


class StackOrder(IntEnum):
    ABSENCE = 0
    SHIFT = 1
    MEETING = 2
    REST_DAY = 3


class CalendarItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: ItemKind
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    order: StackOrder
    editable: bool = False
    props: dict[str, Any] = Field(default_factory=dict)


class OnCallOverlay(BaseModel):
    model_config = ConfigDict(frozen=True)

    period_id: str
    worker_id: str
    label: str
    week_start: date
    start: datetime
    end: datetime


UNASSIGNED_TITLE = "To assign"
UNKNOWN_LOCATION = "Unknown location"

ABSENCE_CLASSES = {
    "CP": "leave",
    "RTT": "leave",
    "CPSS": "leave",
    "MAL": "absence",
    "AT": "absence",
}


def _midnight(day: date, like: datetime | None = None) -> datetime:
    tz = like.tzinfo if like is not None else None
    return datetime.combine(day, time.min, tzinfo=tz)


def shift_start(shift: ShiftAssignment) -> datetime:
    if shift.start_at is None:
        raise ValueError(f"shift {shift.id} has no start")
    return shift.start_at


def shift_display_span(
    shift: ShiftAssignment, view: ViewMode = ViewMode.MONTH
) -> tuple[datetime, datetime]:
    """
    Month view shows a shift as whole days from its start date, spanning its
    working days; other views use the real instants.
    """
    start_at = shift_start(shift)
    end_at = shift.end_at or start_at
    if view != ViewMode.MONTH:
        return start_at, end_at
    days = working_days(start_at, end_at)
    start = _midnight(start_at.date(), start_at)
    return start, start + timedelta(days=days)


def shift_time_summary(shift: ShiftAssignment) -> str:
    start_at = shift_start(shift)
    end_at = shift.end_at or start_at
    return (
        f"{start_at:%H:%M} - {end_at:%H:%M} "
        f"({duration_hours(start_at, end_at)}h)"
    )


def shift_item(
    shift: ShiftAssignment, view: ViewMode = ViewMode.MONTH
) -> CalendarItem:
    start_at = shift_start(shift)
    end_at = shift.end_at or start_at
    start, end = shift_display_span(shift, view)
    location_name = (
        shift.location.name if shift.location and shift.location.name else None
    ) or UNKNOWN_LOCATION
    worker_name = (
        shift.worker.full_name
        if shift.worker and shift.worker.full_name
        else None
    )
    if shift.is_assigned and worker_name is None:
        worker_name = f"Worker {shift.assigned_worker_id}"

    return CalendarItem(
        id=shift.id,
        kind=ItemKind.SHIFT,
        title=f"{location_name} - {worker_name or UNASSIGNED_TITLE}",
        start=start,
        end=end,
        all_day=view == ViewMode.MONTH,
        order=StackOrder.SHIFT,
        editable=True,
        props={
            "assigned": shift.is_assigned,
            "workerId": shift.assigned_worker_id,
            "workerName": worker_name,
            "workerColor": shift.worker.color if shift.worker else None,
            "locationId": shift.location_id,
            "locationName": location_name,
            "reinforcement": shift.is_reinforcement,
            "type": shift.type.value,
            "status": shift.status.value,
            "workingDays": working_days(start_at, end_at),
            "realStart": start_at.isoformat(),
            "realEnd": end_at.isoformat(),
            "timeSummary": shift_time_summary(shift),
            "comment": shift.comment,
            "segment": (
                {"number": shift.segment_number, "total": shift.total_segments}
                if shift.is_segmented
                else None
            ),
        },
    )


def absence_item(absence: Absence) -> CalendarItem:
    worker_name = absence.worker.full_name if absence.worker else ""
    label = absence.type_label or absence.type_code or "Absence"
    return CalendarItem(
        id=f"absence-{absence.id}",
        kind=ItemKind.ABSENCE,
        title=f"{worker_name} - {label}" if worker_name else label,
        start=_midnight(absence.start_at),
        # end is inclusive on the wire
        end=_midnight(absence.end_at + timedelta(days=1)),
        all_day=True,
        order=StackOrder.ABSENCE,
        props={
            "workerId": absence.worker_id,
            "typeCode": absence.type_code,
            "typeLabel": absence.type_label,
            "cssClass": ABSENCE_CLASSES.get(absence.type_code or "", "absence"),
        },
    )


def meeting_item(meeting: Meeting) -> CalendarItem:
    names = [p.full_name for p in meeting.participants]
    if len(names) > 2:
        participants = f"{', '.join(names[:2])} +{len(names) - 2}"
    else:
        participants = ", ".join(names)
    return CalendarItem(
        id=f"meeting-{meeting.id}",
        kind=ItemKind.MEETING,
        title=meeting.title or "Meeting",
        start=meeting.start_at,
        end=meeting.end_at,
        order=StackOrder.MEETING,
        props={
            "participantIds": list(meeting.participant_ids),
            "participantCount": len(meeting.participant_ids),
            "participants": participants,
        },
    )


def rest_day_item(rest_day: FixedRestDay) -> CalendarItem:
    start = _midnight(rest_day.day)
    return CalendarItem(
        id=f"rest-{rest_day.id}",
        kind=ItemKind.REST_DAY,
        title="Weekly rest",
        start=start,
        end=start + timedelta(days=1),
        all_day=True,
        order=StackOrder.REST_DAY,
        props={"workerId": rest_day.worker_id, "notes": rest_day.notes},
    )


def _sort_key(item: CalendarItem) -> tuple[int, str, str]:
    # naive all-day dates and aware instants compare by their ISO text
    return (item.order, item.start.isoformat(), item.id)


def transform(
    data: MonthData,
    view: ViewMode = ViewMode.MONTH,
    *,
    status_filter: Iterable[ShiftStatus] | None = None,
) -> tuple[CalendarItem, ...]:
    statuses = set(status_filter) if status_filter is not None else None
    items: list[CalendarItem] = [absence_item(a) for a in data.absences]
    for shift in data.shifts:
        if shift.start_at is None:
            continue
        if statuses is not None and shift.status not in statuses:
            continue
        items.append(shift_item(shift, view))
    items.extend(meeting_item(m) for m in data.meetings)
    items.extend(rest_day_item(r) for r in data.fixed_rest_days)
    return tuple(sorted(items, key=_sort_key))


def _as_naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


def items_in_range(
    items: Iterable[CalendarItem], start: datetime, end: datetime
) -> list[CalendarItem]:
    """
    Items overlapping the visible range [start, end), in their stacking order.

    Compared on wall-clock time so all-day and timed items mix.
    """
    lo, hi = _as_naive(start), _as_naive(end)
    return [
        item
        for item in items
        if _as_naive(item.start) < hi
        and (_as_naive(item.end) > lo or _as_naive(item.start) >= lo)
    ]


def on_call_overlays(
    periods: Iterable[OnCallPeriod], start: date, end: date
) -> list[OnCallOverlay]:
    """
    One bar per (period, visible Monday-based week) the period intersects.
    Periods without a worker are not shown.
    """
    overlays: list[OnCallOverlay] = []
    first_week = start - timedelta(days=start.weekday())
    for period in sorted(periods, key=lambda p: (p.start_at.isoformat(), p.id)):
        if period.worker_id is None:
            continue
        label = period.label or "On call"
        if period.worker and period.worker.full_name:
            label = f"{label} - {period.worker.full_name}"
        week = first_week
        while week < end:
            week_start = _midnight(week, period.start_at)
            week_end = week_start + timedelta(days=7)
            if period.start_at < week_end and period.end_at > week_start:
                overlays.append(
                    OnCallOverlay(
                        period_id=period.id,
                        worker_id=period.worker_id,
                        label=label,
                        week_start=week,
                        start=max(period.start_at, week_start),
                        end=min(period.end_at, week_end),
                    )
                )
            week += timedelta(days=7)
    return overlays

"""
Optimistic view of the calendar: authoritative month data with the pending
edits laid on top. The base data is never mutated, so dropping the ledger or
reloading from the server always gives back the authoritative state.
"""

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from planning.events import ViewMode, shift_display_span, shift_time_summary
from planning.models import (
    ChangeKind,
    MonthData,
    PendingChange,
    ShiftAssignment,
    WorkerRef,
)

# payload key -> ShiftAssignment field
_UPDATABLE = {
    "startAt": "start_at",
    "endAt": "end_at",
    "type": "type",
    "comment": "comment",
}


def apply_change(
    shift: ShiftAssignment,
    change: PendingChange,
    roster: Mapping[str, WorkerRef] | None = None,
) -> ShiftAssignment | None:
    if change.kind == ChangeKind.DELETE:
        return None

    values = shift.model_dump()
    payload = change.payload
    if "workerId" in payload:
        worker_id = payload["workerId"]
        values["assigned_worker_id"] = worker_id
        values["worker"] = (
            _worker(worker_id, roster) if worker_id is not None else None
        )
    if change.kind == ChangeKind.UPDATE:
        for key, field in _UPDATABLE.items():
            if key in payload:
                values[field] = payload[key]
    # re-validate so the working days follow the new instants
    return ShiftAssignment.model_validate(values)


def _worker(worker_id: Any, roster: Mapping[str, WorkerRef] | None) -> WorkerRef:
    worker_id = str(worker_id)
    if roster and worker_id in roster:
        return roster[worker_id]
    return WorkerRef(id=worker_id)


def apply_changes(
    data: MonthData,
    changes: Iterable[PendingChange],
    roster: Mapping[str, WorkerRef] | None = None,
) -> MonthData:
    by_id = {c.target_id: c for c in changes}
    if not by_id:
        return data
    shifts: list[ShiftAssignment] = []
    for shift in data.shifts:
        change = by_id.get(shift.id)
        if change is None:
            shifts.append(shift)
            continue
        projected = apply_change(shift, change, roster)
        if projected is not None:
            shifts.append(projected)
    return data.model_copy(update={"shifts": shifts})


def _wall(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


def shifts_at(
    data: MonthData, when: datetime, view: ViewMode = ViewMode.MONTH
) -> list[ShiftAssignment]:
    """
    Shifts a drop at ``when`` could be aimed at.

    Month view matches the start day or the displayed day span; other views
    match the real interval.
    """
    matches = []
    point = _wall(when)
    for shift in data.shifts:
        if shift.start_at is None:
            continue
        start, end = (_wall(v) for v in shift_display_span(shift, view))
        if view == ViewMode.MONTH and point.date() == start.date():
            matches.append(shift)
        elif start <= point < end:
            matches.append(shift)
    return matches


def touched_months_of(
    shift: ShiftAssignment | None, change: PendingChange
) -> set[tuple[int, int]]:
    """
    (year, month) pairs whose calendar shows this change, before and after it.
    """
    instants: list[datetime] = []
    if shift is not None:
        instants.extend(v for v in (shift.start_at, shift.end_at) if v is not None)
    for key in ("startAt", "endAt"):
        value = change.payload.get(key)
        if isinstance(value, datetime):
            instants.append(value)
        elif isinstance(value, str):
            instants.append(datetime.fromisoformat(value))
    return {(i.year, i.month) for i in instants}


def candidate_summary(shift: ShiftAssignment) -> str:
    location = (
        shift.location.name if shift.location and shift.location.name else None
    )
    return f"{location or 'Unknown location'} · {shift_time_summary(shift)}"

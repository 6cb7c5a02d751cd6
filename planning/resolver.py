"""
Maps a staff drop gesture onto exactly one shift.

Order of precedence: the shift element the pointer was over, then whatever
element sits under the release point, then every shift on the drop date. A
date that matches several shifts is never auto-assigned; the caller has to
present the candidates and pass the user's pick to ``choose``.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Protocol

from planning.errors import UserInputError
from planning.events import ViewMode, shift_start
from planning.models import ShiftAssignment
from planning.projection import candidate_summary

NO_TARGET_MESSAGE = "Drop the worker onto a shift (dashed box)"


class ElementLocator(Protocol):
    def shift_id_at(self, x: float, y: float) -> str | None: ...


class CandidateSource(Protocol):
    def shift(self, shift_id: str) -> ShiftAssignment | None: ...

    def shifts_at(
        self, when: datetime, view: ViewMode
    ) -> Sequence[ShiftAssignment]: ...


class Resolution(StrEnum):
    TARGET = "target"
    POINT = "point"
    DATE = "date"
    CHOICE = "choice"


@dataclass(frozen=True)
class DropGesture:
    worker_id: str | None
    target_shift_id: str | None = None
    point: tuple[float, float] | None = None
    drop_at: datetime | None = None
    view: ViewMode = ViewMode.MONTH


@dataclass(frozen=True)
class Candidate:
    shift_id: str
    location_name: str | None
    start: datetime
    end: datetime
    summary: str


@dataclass(frozen=True)
class Resolved:
    shift_id: str
    worker_id: str
    via: Resolution


@dataclass(frozen=True)
class Ambiguous:
    worker_id: str
    drop_at: datetime
    candidates: tuple[Candidate, ...] = field(default_factory=tuple)

    def shift_ids(self) -> list[str]:
        return [c.shift_id for c in self.candidates]


def _candidate(shift: ShiftAssignment) -> Candidate:
    start = shift_start(shift)
    return Candidate(
        shift_id=shift.id,
        location_name=shift.location.name if shift.location else None,
        start=start,
        end=shift.end_at or start,
        summary=candidate_summary(shift),
    )


def resolve_drop(
    drop: DropGesture,
    *,
    candidates: CandidateSource,
    locator: ElementLocator | None = None,
) -> Resolved | Ambiguous:
    if not drop.worker_id:
        raise UserInputError("No worker was dragged")

    if drop.target_shift_id and candidates.shift(drop.target_shift_id):
        return Resolved(drop.target_shift_id, drop.worker_id, Resolution.TARGET)

    if drop.point is not None and locator is not None:
        shift_id = locator.shift_id_at(*drop.point)
        if shift_id and candidates.shift(shift_id):
            return Resolved(shift_id, drop.worker_id, Resolution.POINT)

    if drop.drop_at is None:
        raise UserInputError(NO_TARGET_MESSAGE)

    matches = list(candidates.shifts_at(drop.drop_at, drop.view))
    if not matches:
        raise UserInputError(NO_TARGET_MESSAGE)
    if len(matches) == 1:
        return Resolved(matches[0].id, drop.worker_id, Resolution.DATE)
    return Ambiguous(
        worker_id=drop.worker_id,
        drop_at=drop.drop_at,
        candidates=tuple(_candidate(s) for s in matches),
    )


def choose(ambiguous: Ambiguous, shift_id: str) -> Resolved:
    if shift_id not in ambiguous.shift_ids():
        raise UserInputError(f"Shift {shift_id} is not one of the proposed shifts")
    return Resolved(shift_id, ambiguous.worker_id, Resolution.CHOICE)

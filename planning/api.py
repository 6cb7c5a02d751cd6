from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request

from planning.config import PlanningSettings, configure_logging
from planning.errors import (
    NetworkError,
    PlanningError,
    ServerValidationError,
    UserInputError,
)
from planning.events import ViewMode
from planning.gateway import CalendarGateway
from planning.models import BatchResult, ShiftType, WireModel
from planning.months import MonthKey
from planning.resolver import Ambiguous, DropGesture
from planning.session import PlanningSession

router = APIRouter()


class DropRequest(WireModel):
    worker_id: str | None = None
    target_shift_id: str | None = None
    x: float | None = None
    y: float | None = None
    drop_at: datetime | None = None
    view: ViewMode = ViewMode.MONTH


class ChooseRequest(WireModel):
    shift_id: str


class AssignRequest(WireModel):
    worker_id: str


class ShiftUpdateRequest(WireModel):
    start_at: datetime | None = None
    end_at: datetime | None = None
    type: ShiftType | None = None
    worker_id: str | None = None
    comment: str | None = None


class GenerateRequest(WireModel):
    template_id: str
    start_date: date
    end_date: date
    scope: str = "all"
    location_id: str | None = None


class ValidateMonthRequest(WireModel):
    year: int | None = None
    month: int | None = None


class BulkDeleteRequest(WireModel):
    year: int
    month: int | None = None
    location_id: str | None = None


def _http_error(exc: PlanningError) -> HTTPException:
    if isinstance(exc, UserInputError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ServerValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, NetworkError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _session(request: Request) -> PlanningSession:
    return request.app.state.session


def _result(result: BatchResult) -> dict:
    return result.model_dump(mode="json", by_alias=True, exclude_none=True)


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/calendar/items")
async def calendar_items(start: datetime, end: datetime, request: Request) -> dict:
    if end <= start:
        raise HTTPException(status_code=400, detail="end must be after start")
    try:
        items, overlays = await _session(request).query(start, end)
    except PlanningError as exc:
        raise _http_error(exc) from exc
    return {
        "items": [i.model_dump(mode="json") for i in items],
        "overlays": [o.model_dump(mode="json") for o in overlays],
    }


@router.get("/calendar/{year}/{month}")
async def show_month(
    year: int, month: int, request: Request, view: ViewMode | None = None
) -> dict:
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="month must be 1-12")
    session = _session(request)
    key = MonthKey(year, month)
    items = await session.show_month(year, month, view=view)
    return {
        "month": str(key),
        "displayed": str(session.current) if session.current else None,
        "view": session.view.value,
        "dirty": session.dirty,
        "items": [i.model_dump(mode="json") for i in items],
        "overlays": [
            o.model_dump(mode="json")
            for o in session.overlays_between(
                key.first_day(), key.next().first_day()
            )
        ],
    }


@router.get("/session")
async def session_state(request: Request) -> dict:
    session = _session(request)
    choice = session.pending_choice
    return {
        "current": str(session.current) if session.current else None,
        "view": session.view.value,
        "dirty": session.dirty,
        "pendingChanges": [
            c.model_dump(mode="json", by_alias=True) for c in session.ledger
        ],
        "pendingChoice": _choice(choice) if choice else None,
    }


def _choice(ambiguous: Ambiguous) -> dict:
    return {
        "workerId": ambiguous.worker_id,
        "dropAt": ambiguous.drop_at.isoformat(),
        "candidates": [
            {
                "shiftId": c.shift_id,
                "locationName": c.location_name,
                "start": c.start.isoformat(),
                "end": c.end.isoformat(),
                "summary": c.summary,
            }
            for c in ambiguous.candidates
        ],
    }


@router.post("/drops")
async def drop_worker(body: DropRequest, request: Request) -> dict:
    point = (body.x, body.y) if body.x is not None and body.y is not None else None
    gesture = DropGesture(
        worker_id=body.worker_id,
        target_shift_id=body.target_shift_id,
        point=point,
        drop_at=body.drop_at,
        view=body.view,
    )
    try:
        outcome = _session(request).drop(gesture)
    except PlanningError as exc:
        raise _http_error(exc) from exc

    if isinstance(outcome, Ambiguous):
        return {"status": "choose", **_choice(outcome)}
    return {
        "status": "assigned",
        "shiftId": outcome.shift_id,
        "workerId": outcome.worker_id,
        "via": outcome.via.value,
    }


@router.post("/drops/choose")
async def choose_shift(body: ChooseRequest, request: Request) -> dict:
    try:
        resolved = _session(request).choose(body.shift_id)
    except PlanningError as exc:
        raise _http_error(exc) from exc
    return {
        "status": "assigned",
        "shiftId": resolved.shift_id,
        "workerId": resolved.worker_id,
        "via": resolved.via.value,
    }


@router.patch("/shifts/{shift_id}")
async def update_shift(
    shift_id: str, body: ShiftUpdateRequest, request: Request
) -> dict:
    changes = {}
    if "worker_id" in body.model_fields_set:
        changes["worker_id"] = body.worker_id
    try:
        shift = _session(request).update_shift(
            shift_id,
            start_at=body.start_at,
            end_at=body.end_at,
            shift_type=body.type,
            comment=body.comment,
            **changes,
        )
    except PlanningError as exc:
        raise _http_error(exc) from exc
    return {"status": "pending", "shift": shift.model_dump(mode="json", by_alias=True)}


@router.delete("/shifts/{shift_id}")
async def delete_shift(shift_id: str, request: Request) -> dict:
    try:
        _session(request).delete_shift(shift_id)
    except PlanningError as exc:
        raise _http_error(exc) from exc
    return {"status": "pending", "shiftId": shift_id}


@router.post("/shifts/{shift_id}/assign")
async def assign_now(shift_id: str, body: AssignRequest, request: Request) -> dict:
    try:
        result = await _session(request).assign_now(shift_id, body.worker_id)
    except PlanningError as exc:
        raise _http_error(exc) from exc
    return _result(result)


@router.post("/save")
async def save(request: Request) -> dict:
    outcome = await _session(request).save()
    if outcome is None:
        return {"status": "clean", "saved": 0}
    if outcome.error is not None:
        raise _http_error(outcome.error)
    return {
        "status": "saved",
        "saved": outcome.saved,
        "warnings": [
            w.model_dump(mode="json", by_alias=True) for w in outcome.warnings
        ],
        "invalidated": [str(k) for k in outcome.invalidated],
    }


@router.post("/admin/generate")
async def generate(body: GenerateRequest, request: Request) -> dict:
    try:
        result = await _session(request).generate_from_template(
            body.template_id,
            body.start_date,
            body.end_date,
            scope=body.scope,
            location_id=body.location_id,
        )
    except PlanningError as exc:
        raise _http_error(exc) from exc
    return _result(result)


@router.post("/admin/validate-month")
async def validate_month(body: ValidateMonthRequest, request: Request) -> dict:
    try:
        result = await _session(request).validate_month(body.year, body.month)
    except PlanningError as exc:
        raise _http_error(exc) from exc
    return _result(result)


@router.post("/admin/bulk-delete")
async def bulk_delete(body: BulkDeleteRequest, request: Request) -> dict:
    try:
        result = await _session(request).bulk_delete(
            body.year, body.month, body.location_id
        )
    except PlanningError as exc:
        raise _http_error(exc) from exc
    return _result(result)


@router.get("/notifications")
async def notifications(request: Request) -> list[dict]:
    return [n.model_dump(mode="json") for n in _session(request).notifier.drain()]


def create_app(
    session: PlanningSession | None = None,
    *,
    settings: PlanningSettings | None = None,
) -> FastAPI:
    if settings is None:
        settings = session.settings if session else PlanningSettings.from_env()
    configure_logging(settings)

    http_client: httpx.AsyncClient | None = None
    if session is None:
        http_client = httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        session = PlanningSession(
            CalendarGateway(http_client, settings.base_url), settings=settings
        )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await session.aclose()
        if http_client is not None:
            await http_client.aclose()

    app = FastAPI(title="Planning", lifespan=lifespan)
    app.state.settings = settings
    app.state.session = session

    app.include_router(router)
    return app

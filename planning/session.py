"""
A scheduler's planning session: the displayed month, its cache, the pending
edits and every network round trip behind them.

Render policy for a month:

* fresh cache entry: render it, no request;
* stale entry: render it and revalidate in the background, at most once at a
  time per month;
* miss: wait for a live fetch.

After each render the two neighbouring months are prefetched at idle
priority. Concurrent loads of one month share a single request.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from functools import partial
from typing import Any

from planning.cache import MonthCache
from planning.config import PlanningSettings
from planning.errors import PlanningError, UserInputError
from planning.events import (
    CalendarItem,
    OnCallOverlay,
    ViewMode,
    items_in_range,
    on_call_overlays,
    transform,
)
from planning.gateway import CalendarGateway, merge_month_data
from planning.ledger import PendingChangeLedger
from planning.models import (
    BatchResult,
    ChangeKind,
    MonthData,
    ShiftAssignment,
    ShiftStatus,
    ShiftType,
    WorkerRef,
)
from planning.months import MonthKey, months_between, months_of_year
from planning.notifier import Notifier
from planning.projection import apply_changes, shifts_at
from planning.reconcile import BatchReconciler, SaveOutcome
from planning.resolver import (
    Ambiguous,
    DropGesture,
    ElementLocator,
    Resolved,
    choose,
    resolve_drop,
)
from planning.scheduler import IdleTaskScheduler
from planning.storage import JsonFileStore

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]
RefreshListener = Callable[[tuple[CalendarItem, ...]], None]

MAX_QUERY_MONTHS = 12

_UNSET: Any = object()


@dataclass(frozen=True)
class _Ticket:
    seq: int
    epoch: int


@dataclass
class _Fetch:
    task: asyncio.Task
    ticket: _Ticket


class PlanningSession:
    def __init__(
        self,
        gateway: CalendarGateway,
        *,
        settings: PlanningSettings | None = None,
        cache: MonthCache | None = None,
        ledger: PendingChangeLedger | None = None,
        notifier: Notifier | None = None,
        scheduler: IdleTaskScheduler | None = None,
        locator: ElementLocator | None = None,
        now_fn: NowFn | None = None,
        status_filter: Iterable[ShiftStatus] | None = None,
    ) -> None:
        self.settings = settings or PlanningSettings()
        now_fn = now_fn or (lambda: datetime.now(UTC))
        self.gateway = gateway
        store = (
            JsonFileStore(self.settings.cache_dir) if self.settings.cache_dir else None
        )
        self.cache = cache or MonthCache(
            store,
            ttl=self.settings.cache_ttl,
            max_age=self.settings.cache_max_age,
            now_fn=now_fn,
        )
        self.ledger = ledger or PendingChangeLedger(now_fn=now_fn)
        self.notifier = notifier or Notifier(now_fn=now_fn)
        self.scheduler = scheduler or IdleTaskScheduler()
        self.locator = locator
        self.status_filter = list(status_filter) if status_filter else None

        self.view = ViewMode.MONTH
        self.current: MonthKey | None = None
        self.pending_choice: Ambiguous | None = None

        self._base = MonthData()
        self._roster: dict[str, WorkerRef] = {}
        self._syncing: set[MonthKey] = set()
        self._in_flight: dict[MonthKey, _Fetch] = {}
        self._stored: dict[MonthKey, int] = {}
        self._seq = 0
        self._epoch = 0
        self._navigation = 0
        self._background: set[asyncio.Task] = set()
        self._listeners: list[RefreshListener] = []

        self.reconciler = BatchReconciler(
            gateway,
            self.ledger,
            self.cache,
            self.notifier,
            shift_lookup=lambda shift_id: self._base.shift(shift_id),
            reload=self._reload_quietly,
            current_month=lambda: self.current,
        )
        self.cache.clean_old_entries()

    # -- query surface -------------------------------------------------

    @property
    def dirty(self) -> bool:
        return self.ledger.dirty

    def can_navigate_away(self) -> bool:
        return not self.ledger.dirty

    def set_roster(self, workers: Iterable[WorkerRef]) -> None:
        self._roster = {w.id: w for w in workers}

    def on_refresh(self, listener: RefreshListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def view_data(self) -> MonthData:
        return apply_changes(self._base, self.ledger.changes(), self._roster)

    def items(self) -> tuple[CalendarItem, ...]:
        return transform(self.view_data(), self.view, status_filter=self.status_filter)

    def overlays_between(self, start: date, end: date) -> list[OnCallOverlay]:
        return on_call_overlays(self._base.on_call_periods, start, end)

    async def query(
        self, start: datetime, end: datetime
    ) -> tuple[list[CalendarItem], list[OnCallOverlay]]:
        """
        Items and on-call overlays for [start, end). Months outside the
        displayed window are read through the cache; the displayed month does
        not change.
        """
        months = list(months_between(start.date(), end.date()))
        if len(months) > MAX_QUERY_MONTHS:
            raise UserInputError(f"Query at most {MAX_QUERY_MONTHS} months at a time")
        window = set(self.current.adjacent()) if self.current else set()
        loaded = [self._base]
        with self.scheduler.foreground():
            for key in months:
                if key in window:
                    continue
                lookup = self.cache.get(key)
                loaded.append(lookup.data if lookup else await self._load(key))
        data = merge_month_data(loaded)
        items = transform(
            apply_changes(data, self.ledger.changes(), self._roster),
            self.view,
            status_filter=self.status_filter,
        )
        return (
            items_in_range(items, start, end),
            on_call_overlays(data.on_call_periods, start.date(), end.date()),
        )

    def shift(self, shift_id: str) -> ShiftAssignment | None:
        return self.view_data().shift(shift_id)

    def shifts_at(self, when: datetime, view: ViewMode) -> list[ShiftAssignment]:
        return shifts_at(self.view_data(), when, view)

    # -- rendering -----------------------------------------------------

    async def show_month(
        self, year: int, month: int, *, view: ViewMode | None = None
    ) -> tuple[CalendarItem, ...]:
        key = MonthKey(year, month)
        if view is not None:
            self.view = view
        self._navigation += 1
        navigation = self._navigation
        with self.scheduler.foreground():
            lookup = self.cache.get(key)
            if lookup is None:
                try:
                    data = await self._load(key)
                except PlanningError as exc:
                    logger.warning("loading %s failed: %s", key, exc)
                    self.notifier.error(
                        f"Could not load the planning for {key}", code="load"
                    )
                    return self.items()
                if navigation != self._navigation:
                    # the user moved on while this month was loading
                    logger.debug("%s loaded after a later navigation", key)
                    return self.items()
            else:
                data = lookup.data
                if not lookup.fresh:
                    self._revalidate_in_background(key)
        self.current = key
        self._base = data
        self._schedule_prefetch(key)
        return self.items()

    async def reload(self) -> tuple[CalendarItem, ...]:
        """
        Authoritative reload of the displayed month, bypassing the cache.
        """
        if self.current is None:
            return self.items()
        key = self.current
        # results of requests issued before this point are no longer cached
        self._epoch += 1
        with self.scheduler.foreground():
            data = await self._load(key, force=True)
        if key == self.current:
            self._base = data
            self._emit_refresh()
        self._schedule_prefetch(key)
        return self.items()

    async def _reload_quietly(self) -> None:
        await self.reload()

    def _emit_refresh(self) -> None:
        if not self._listeners:
            return
        items = self.items()
        for listener in list(self._listeners):
            listener(items)

    # -- fetching ------------------------------------------------------

    async def _fetch(
        self, key: MonthKey, *, force: bool = False
    ) -> tuple[MonthData, _Ticket]:
        fetch = self._in_flight.get(key)
        if fetch is None or force or fetch.ticket.epoch != self._epoch:
            self._seq += 1
            ticket = _Ticket(seq=self._seq, epoch=self._epoch)
            task = asyncio.get_running_loop().create_task(
                self.gateway.fetch_window(key)
            )
            fetch = _Fetch(task=task, ticket=ticket)
            self._in_flight[key] = fetch

            def _cleanup(t: asyncio.Task, key: MonthKey = key) -> None:
                current = self._in_flight.get(key)
                if current is not None and current.task is t:
                    del self._in_flight[key]
                if not t.cancelled():
                    t.exception()

            task.add_done_callback(_cleanup)
        else:
            logger.debug("joining in-flight fetch of %s", key)
        data = await asyncio.shield(fetch.task)
        return data, fetch.ticket

    def _accepts(self, key: MonthKey, ticket: _Ticket) -> bool:
        return ticket.epoch == self._epoch and ticket.seq >= self._stored.get(key, 0)

    def _store(self, key: MonthKey, data: MonthData, ticket: _Ticket) -> bool:
        if not self._accepts(key, ticket):
            logger.debug("dropping outdated result for %s", key)
            return False
        self._stored[key] = ticket.seq
        self.cache.set(key, data)
        return True

    async def _load(self, key: MonthKey, *, force: bool = False) -> MonthData:
        data, ticket = await self._fetch(key, force=force)
        self._store(key, data, ticket)
        return data

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _revalidate_in_background(self, key: MonthKey) -> None:
        if key in self._syncing:
            return
        self._syncing.add(key)
        self._spawn(self._revalidate(key))

    async def _revalidate(self, key: MonthKey) -> None:
        try:
            try:
                data, ticket = await self._fetch(key)
            except PlanningError as exc:
                logger.warning("background refresh of %s failed: %s", key, exc)
                self.notifier.warning(
                    f"Showing saved planning for {key}, refresh failed",
                    code="revalidate",
                )
                return

            cached = self.cache.get(key)
            if cached is not None and _same(cached.data, data):
                if self._accepts(key, ticket):
                    self.cache.touch(key)
                logger.debug("%s unchanged", key)
                return
            if not self._store(key, data, ticket):
                return
            logger.debug("%s changed, refreshing", key)
            if key == self.current:
                self._base = data
                self._emit_refresh()
        finally:
            self._syncing.discard(key)

    def _schedule_prefetch(self, key: MonthKey) -> None:
        if not self.settings.prefetch_adjacent:
            return
        for neighbour in (key.previous(), key.next()):
            self.scheduler.schedule(
                ("prefetch", neighbour), partial(self._prefetch, neighbour)
            )

    async def _prefetch(self, key: MonthKey) -> None:
        lookup = self.cache.get(key)
        if lookup is not None and lookup.fresh:
            return
        try:
            await self._load(key)
        except PlanningError as exc:
            logger.info("prefetch of %s failed: %s", key, exc)

    async def wait_idle(self) -> None:
        """
        Wait for background refreshes and queued prefetches to settle.
        """
        while self._background or self.scheduler.pending:
            if self._background:
                await asyncio.gather(*self._background, return_exceptions=True)
            await self.scheduler.drain()
        await self.scheduler.drain()

    async def aclose(self) -> None:
        tasks = list(self._background)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.scheduler.aclose()

    # -- editing -------------------------------------------------------

    def drop(self, gesture: DropGesture) -> Resolved | Ambiguous:
        """
        Raises ``UserInputError`` when the drop hits no shift.
        """
        outcome = resolve_drop(gesture, candidates=self, locator=self.locator)
        if isinstance(outcome, Ambiguous):
            self.pending_choice = outcome
            return outcome
        self.pending_choice = None
        self._assign_locally(outcome)
        return outcome

    def choose(self, shift_id: str) -> Resolved:
        if self.pending_choice is None:
            raise UserInputError("There is no shift choice to make")
        resolved = choose(self.pending_choice, shift_id)
        self.pending_choice = None
        self._assign_locally(resolved)
        return resolved

    def cancel_choice(self) -> None:
        self.pending_choice = None

    def _assign_locally(self, resolved: Resolved) -> None:
        self.ledger.add_change(
            resolved.shift_id, ChangeKind.ASSIGN, {"workerId": resolved.worker_id}
        )
        self.notifier.info("Change recorded locally")
        self._emit_refresh()

    def _require_shift(self, shift_id: str) -> ShiftAssignment:
        shift = self.shift(shift_id)
        if shift is None or shift.start_at is None:
            raise UserInputError(f"Shift {shift_id} is not in the calendar")
        return shift

    def update_shift(
        self,
        shift_id: str,
        *,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        shift_type: ShiftType | None = None,
        worker_id: str | None = _UNSET,
        comment: str | None = None,
    ) -> ShiftAssignment:
        """
        Buffer an edit of a shift. The buffered payload is the full edited
        state, so it safely replaces any earlier pending change for the shift.
        """
        if (
            start_at is None
            and end_at is None
            and shift_type is None
            and worker_id is _UNSET
            and comment is None
        ):
            raise UserInputError("Nothing to update")

        shift = self._require_shift(shift_id)
        new_start = shift.start_at
        if start_at is not None:
            new_start = _aligned(start_at, shift.start_at)
        new_end = shift.end_at
        if end_at is not None:
            new_end = _aligned(end_at, shift.end_at or shift.start_at)
        if new_end is None:
            raise UserInputError("The shift needs an end")
        if new_end <= new_start:
            raise UserInputError("The end must be after the start")

        payload = {
            "startAt": new_start.isoformat(),
            "endAt": new_end.isoformat(),
            "type": (shift_type or shift.type).value,
            "workerId": (
                shift.assigned_worker_id if worker_id is _UNSET else worker_id
            ),
            "comment": shift.comment if comment is None else comment,
        }
        self.ledger.add_change(shift_id, ChangeKind.UPDATE, payload)
        self.notifier.info("Changes recorded locally")
        self._emit_refresh()
        projected = self.shift(shift_id)
        if projected is None:
            raise UserInputError(f"Shift {shift_id} is not in the calendar")
        return projected

    def move_shift(
        self, shift_id: str, start_at: datetime, end_at: datetime
    ) -> ShiftAssignment:
        return self.update_shift(shift_id, start_at=start_at, end_at=end_at)

    def delete_shift(self, shift_id: str) -> None:
        self._require_shift(shift_id)
        self.ledger.add_change(shift_id, ChangeKind.DELETE)
        self.notifier.info("Shift deleted locally")
        self._emit_refresh()

    async def save(self) -> SaveOutcome | None:
        return await self.reconciler.save()

    async def assign_now(self, shift_id: str, worker_id: str) -> BatchResult:
        """
        Assign immediately instead of buffering. Errors are published, then
        re-raised.
        """
        shift = self._base.shift(shift_id)
        try:
            result = await self.gateway.assign(shift_id, worker_id)
        except PlanningError as exc:
            logger.warning("assigning %s to %s failed: %s", worker_id, shift_id, exc)
            self.notifier.error("Assignment failed", code="assign")
            raise
        self.pending_choice = None
        self.notifier.warnings(result.warnings)
        self.notifier.success("Worker assigned")
        months: list[MonthKey] = []
        if shift is not None and shift.start_at is not None:
            months.append(MonthKey.of(shift.start_at))
        elif self.current is not None:
            months.append(self.current)
        await self.reconciler.refresh_after(months)
        return result

    # -- administrative operations --------------------------------------

    async def generate_from_template(
        self,
        template_id: str,
        start_date: date,
        end_date: date,
        *,
        scope: str = "all",
        location_id: str | None = None,
    ) -> BatchResult:
        if end_date < start_date:
            raise UserInputError("The end date must not be before the start date")
        try:
            result = await self.gateway.generate_from_template(
                template_id=template_id,
                start_date=start_date,
                end_date=end_date,
                scope=scope,
                location_id=location_id,
            )
        except PlanningError as exc:
            logger.warning("template generation failed: %s", exc)
            self.notifier.error("Generating shifts from the template failed")
            raise
        self.notifier.success(f"{result.created or 0} shifts created")
        self.notifier.warnings(result.warnings)
        await self.reconciler.refresh_after(months_between(start_date, end_date))
        return result

    async def validate_month(
        self, year: int | None = None, month: int | None = None
    ) -> BatchResult:
        key = MonthKey(year, month) if year and month else self.current
        if key is None:
            raise UserInputError("No month selected")
        try:
            result = await self.gateway.validate_month(key.year, key.month)
        except PlanningError as exc:
            logger.warning("validating %s failed: %s", key, exc)
            self.notifier.error(f"Validating the planning for {key} failed")
            raise
        self.notifier.success(
            result.message or f"{result.validated or 0} shifts validated"
        )
        self.notifier.warnings(result.warnings)
        await self.reconciler.refresh_after([key])
        return result

    async def bulk_delete(
        self, year: int, month: int | None = None, location_id: str | None = None
    ) -> BatchResult:
        try:
            result = await self.gateway.bulk_delete(year, month, location_id)
        except PlanningError as exc:
            logger.warning("bulk delete failed: %s", exc)
            self.notifier.error("Deleting draft shifts failed")
            raise
        self.notifier.success(f"{result.deleted or 0} draft shifts deleted")
        months = [MonthKey(year, month)] if month else months_of_year(year)
        await self.reconciler.refresh_after(months)
        return result


def _aligned(value: datetime, stored: datetime | None) -> datetime:
    """
    Edit forms send wall-clock times without an offset; read them in the
    timezone of the stored shift.
    """
    if stored is None or (value.tzinfo is None) == (stored.tzinfo is None):
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=stored.tzinfo)
    raise UserInputError("Shift times must not carry a UTC offset")


def _same(cached: MonthData, fresh: MonthData) -> bool:
    """
    Structural equality over the modelled fields only; anything the models
    do not declare (modification stamps and the like) never counts as a change.
    """
    return cached.model_dump(mode="json") == fresh.model_dump(mode="json")

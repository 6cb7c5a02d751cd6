"""
Commits the pending-change ledger in one batch request.

A batch either succeeds as a whole (soft warnings included) or leaves the
ledger exactly as it was, so the user can retry without re-entering edits.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from planning.cache import MonthCache
from planning.errors import NetworkError, PlanningError, ServerValidationError
from planning.ledger import PendingChangeLedger
from planning.models import BatchResult, BatchWarning, PendingChange, ShiftAssignment
from planning.months import MonthKey
from planning.notifier import Notifier
from planning.projection import touched_months_of

logger = logging.getLogger(__name__)

ReloadFn = Callable[[], Awaitable[None]]
ShiftLookup = Callable[[str], ShiftAssignment | None]
CurrentMonthFn = Callable[[], MonthKey | None]


class BatchGateway(Protocol):
    async def batch_update(
        self, changes: Sequence[PendingChange]
    ) -> BatchResult: ...


@dataclass(frozen=True)
class SaveOutcome:
    saved: int = 0
    warnings: list[BatchWarning] = field(default_factory=list)
    invalidated: list[MonthKey] = field(default_factory=list)
    error: PlanningError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'s' if count > 1 else ''}"


class BatchReconciler:
    def __init__(
        self,
        gateway: BatchGateway,
        ledger: PendingChangeLedger,
        cache: MonthCache,
        notifier: Notifier,
        *,
        shift_lookup: ShiftLookup,
        reload: ReloadFn,
        current_month: CurrentMonthFn | None = None,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._cache = cache
        self._notifier = notifier
        self._shift_lookup = shift_lookup
        self._reload = reload
        self._current_month = current_month or (lambda: None)
        self._saving: asyncio.Task | None = None

    def affected_months(self, changes: Iterable[PendingChange]) -> set[MonthKey]:
        months: set[MonthKey] = set()
        for change in changes:
            touched = touched_months_of(self._shift_lookup(change.target_id), change)
            months.update(MonthKey(y, m) for y, m in touched)
        if not months:
            current = self._current_month()
            if current is not None:
                months.add(current)
        return months

    async def save(self) -> SaveOutcome | None:
        """
        Commit the ledger. A call made while a save is running joins it and
        gets the same outcome, so a batch is never posted twice.
        """
        if self._saving is None:
            changes = self._ledger.changes()
            if not changes:
                return None
            task = asyncio.get_running_loop().create_task(self._commit(changes))
            task.add_done_callback(self._save_done)
            self._saving = task
        else:
            logger.debug("joining the save in progress")
        return await asyncio.shield(self._saving)

    def _save_done(self, task: asyncio.Task) -> None:
        if self._saving is task:
            self._saving = None

    async def _commit(self, changes: list[PendingChange]) -> SaveOutcome:
        # computed before the write: deleted shifts vanish from later lookups
        months = self.affected_months(changes)
        self._notifier.info("Saving...")
        try:
            result = await self._gateway.batch_update(changes)
        except NetworkError as exc:
            logger.warning("batch save failed: %s", exc)
            self._notifier.error("Save failed, your changes are kept", code="network")
            return SaveOutcome(error=exc)
        except ServerValidationError as exc:
            logger.warning("batch save rejected: %s", exc)
            self._notifier.error(f"Save rejected: {exc}", code="validation")
            return SaveOutcome(error=exc)

        self._ledger.discard(changes)
        self._notifier.success(f"{_plural(len(changes), 'change')} saved")
        self._notifier.warnings(result.warnings)
        invalidated = await self.refresh_after(months)
        return SaveOutcome(
            saved=len(changes), warnings=list(result.warnings), invalidated=invalidated
        )

    async def refresh_after(self, months: Iterable[MonthKey]) -> list[MonthKey]:
        """
        Invalidate every range a successful write touched, then reload from
        the server bypassing the cache.
        """
        invalidated: set[MonthKey] = set()
        for key in months:
            invalidated.update(self._cache.invalidate_range(key.year, key.month))
        try:
            await self._reload()
        except PlanningError as exc:
            logger.warning("reload after write failed: %s", exc)
            self._notifier.warning("Saved, but the calendar could not be refreshed")
        return sorted(invalidated)

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from datetime import UTC, datetime
from typing import Any

from planning.models import ChangeKind, PendingChange

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]
DirtyListener = Callable[[bool], None]


class PendingChangeLedger:
    """
    Unsaved local edits, at most one per target id.

    A new change for an id replaces the previous one; there is no history.
    """

    def __init__(self, *, now_fn: NowFn | None = None) -> None:
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self._changes: dict[str, PendingChange] = {}
        self._dirty = False
        self._listeners: list[DirtyListener] = []

    @property
    def dirty(self) -> bool:
        return self._dirty

    def subscribe(self, listener: DirtyListener) -> Callable[[], None]:
        """
        Call ``listener(dirty)`` whenever the dirty flag flips.
        """
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def add_change(
        self,
        target_id: str,
        kind: ChangeKind,
        payload: Mapping[str, Any] | None = None,
    ) -> PendingChange:
        change = PendingChange(
            target_id=target_id,
            kind=kind,
            payload=dict(payload or {}),
            timestamp=self._now_fn(),
        )
        replaced = self._changes.get(target_id)
        self._changes[target_id] = change
        logger.debug(
            "pending %s for %s%s",
            kind.value,
            target_id,
            f" (replaces {replaced.kind.value})" if replaced else "",
        )
        self._set_dirty(True)
        return change

    def get(self, target_id: str) -> PendingChange | None:
        return self._changes.get(target_id)

    def changes(self) -> list[PendingChange]:
        return list(self._changes.values())

    def discard(self, changes: Iterable[PendingChange]) -> int:
        """
        Remove the given changes, leaving any newer change for the same id.
        """
        removed = 0
        for change in changes:
            if self._changes.get(change.target_id) is change:
                del self._changes[change.target_id]
                removed += 1
        if not self._changes:
            self._set_dirty(False)
        return removed

    def clear(self) -> None:
        self._changes.clear()
        self._set_dirty(False)

    def _set_dirty(self, dirty: bool) -> None:
        if dirty == self._dirty:
            return
        self._dirty = dirty
        for listener in list(self._listeners):
            listener(dirty)

    def __contains__(self, target_id: object) -> bool:
        return target_id in self._changes

    def __iter__(self) -> Iterator[PendingChange]:
        return iter(list(self._changes.values()))

    def __len__(self) -> int:
        return len(self._changes)

    def __bool__(self) -> bool:
        return bool(self._changes)

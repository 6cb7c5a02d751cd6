from datetime import timedelta

from factories import at, month_data, shift_payload
from planning.ledger import PendingChangeLedger
from planning.models import ChangeKind, WorkerRef
from planning.projection import apply_changes, touched_months_of


def test_new_change_for_same_target_overwrites_and_marks_dirty() -> None:
    ledger = PendingChangeLedger()
    flips: list[bool] = []
    ledger.subscribe(flips.append)

    ledger.add_change("s1", ChangeKind.ASSIGN, {"workerId": "w1"})
    ledger.add_change("s1", ChangeKind.ASSIGN, {"workerId": "w2"})

    assert len(ledger) == 1
    assert ledger.get("s1").payload == {"workerId": "w2"}
    assert ledger.dirty is True
    # only the clean -> dirty flip is signalled
    assert flips == [True]


def test_discard_keeps_edits_made_after_the_snapshot() -> None:
    ledger = PendingChangeLedger()
    ledger.add_change("s1", ChangeKind.ASSIGN, {"workerId": "w1"})
    ledger.add_change("s2", ChangeKind.DELETE)
    snapshot = ledger.changes()

    ledger.add_change("s1", ChangeKind.ASSIGN, {"workerId": "w3"})
    removed = ledger.discard(snapshot)

    assert removed == 1
    assert [c.target_id for c in ledger] == ["s1"]
    assert ledger.dirty is True

    ledger.discard(ledger.changes())
    assert not ledger
    assert ledger.dirty is False


def test_clear_signals_clean() -> None:
    ledger = PendingChangeLedger()
    flips: list[bool] = []
    unsubscribe = ledger.subscribe(flips.append)
    ledger.add_change("s1", ChangeKind.DELETE)
    ledger.clear()
    unsubscribe()
    ledger.add_change("s1", ChangeKind.DELETE)

    assert flips == [True, False]


def test_projection_applies_pending_changes_over_base_data() -> None:
    base = month_data(
        shifts=[
            shift_payload("s1", at(1)),
            shift_payload("s2", at(2), worker="w9"),
            shift_payload("s3", at(3)),
        ]
    )
    ledger = PendingChangeLedger()
    ledger.add_change("s1", ChangeKind.ASSIGN, {"workerId": "w1"})
    ledger.add_change("s2", ChangeKind.DELETE)
    ledger.add_change(
        "s3",
        ChangeKind.UPDATE,
        {
            "startAt": at(3).isoformat(),
            "endAt": (at(3) + timedelta(hours=49)).isoformat(),
            "type": "garde_48h",
            "workerId": None,
            "comment": "moved",
        },
    )
    roster = {"w1": WorkerRef(id="w1", full_name="Alice", color="#f00")}

    view = apply_changes(base, ledger.changes(), roster)

    assert [s.id for s in view.shifts] == ["s1", "s3"]
    assert view.shift("s1").worker.full_name == "Alice"
    assert view.shift("s1").assigned_worker_id == "w1"
    s3 = view.shift("s3")
    assert s3.working_days_count == 2
    assert s3.comment == "moved"
    assert s3.type.value == "garde_48h"
    # the authoritative data is untouched
    assert [s.id for s in base.shifts] == ["s1", "s2", "s3"]
    assert base.shift("s1").assigned_worker_id is None


def test_touched_months_cover_old_and_new_dates() -> None:
    # Jul 31 08:00 -> Aug 2 08:00
    base = month_data(shifts=[shift_payload("s1", at(31), hours=48)])
    ledger = PendingChangeLedger()
    change = ledger.add_change(
        "s1",
        ChangeKind.UPDATE,
        {"startAt": at(10, month=9).isoformat(), "endAt": at(11, month=9).isoformat()},
    )

    assert touched_months_of(base.shift("s1"), change) == {
        (2025, 7),
        (2025, 8),
        (2025, 9),
    }
    assert touched_months_of(None, ledger.add_change("x", ChangeKind.DELETE)) == set()

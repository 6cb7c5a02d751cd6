import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import FakeBackend
from factories import at, shift_payload
from planning.api import create_app
from planning.session import PlanningSession


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


def _banner(name: str) -> None:
    _p("\n" + "=" * 88)
    _p(f"test: {name}")
    _p("=" * 88)


@pytest.fixture(autouse=True)
def seed(backend: FakeBackend) -> None:
    backend.months[(2025, 7)] = {
        "shifts": [
            shift_payload("s1", at(3, 8), location="Maison A"),
            shift_payload("s2", at(3, 20), location="Maison B"),
        ],
        "onCallPeriods": [
            {
                "id": "oc1",
                "workerId": "w1",
                "startAt": "2025-07-07T08:00:00+00:00",
                "endAt": "2025-07-09T08:00:00+00:00",
            }
        ],
    }


@pytest_asyncio.fixture
async def client(session: PlanningSession):
    app = create_app(session)
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    _banner("health_check returns ok")
    resp = await client.get("/health")
    _p(f"GET /health -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_show_month_returns_items_and_overlays(client: AsyncClient) -> None:
    _banner("month render returns ordered items and on-call overlays")
    resp = await client.get("/calendar/2025/7")
    body = resp.json()
    _p(f"GET /calendar/2025/7 -> status={resp.status_code}, month={body['month']}")

    assert resp.status_code == 200
    assert body["displayed"] == "2025-07"
    assert [i["id"] for i in body["items"]] == ["s1", "s2"]
    assert body["items"][0]["props"]["workingDays"] == 1
    assert [o["week_start"] for o in body["overlays"]] == ["2025-07-07"]
    assert body["dirty"] is False


@pytest.mark.asyncio
async def test_invalid_month_is_rejected(client: AsyncClient) -> None:
    resp = await client.get("/calendar/2025/13")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_items_between(client: AsyncClient) -> None:
    await client.get("/calendar/2025/7?view=week")
    resp = await client.get(
        "/calendar/items",
        params={"start": "2025-07-03T19:00:00", "end": "2025-07-03T21:00:00"},
    )

    assert resp.status_code == 200
    assert [i["id"] for i in resp.json()["items"]] == ["s1", "s2"]

    resp = await client.get(
        "/calendar/items",
        params={"start": "2025-07-04T00:00:00", "end": "2025-07-03T00:00:00"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_items_outside_the_displayed_window_are_loaded(
    client: AsyncClient, backend: FakeBackend
) -> None:
    _banner("a range query outside the loaded window fetches those months")
    backend.months[(2025, 11)] = {"shifts": [shift_payload("nov", at(3, month=11))]}
    await client.get("/calendar/2025/7")

    resp = await client.get(
        "/calendar/items",
        params={"start": "2025-11-01T00:00:00", "end": "2025-11-08T00:00:00"},
    )
    _p(f"GET /calendar/items -> status={resp.status_code}, body={resp.json()}")

    assert resp.status_code == 200
    assert [i["id"] for i in resp.json()["items"]] == ["nov"]
    assert len(backend.month_requests(2025, 11)) == 1
    assert (await client.get("/session")).json()["current"] == "2025-07"

    resp = await client.get(
        "/calendar/items",
        params={"start": "2025-01-01T00:00:00", "end": "2026-06-01T00:00:00"},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_ambiguous_drop_then_choice(client: AsyncClient) -> None:
    _banner("drop on a crowded date asks for a choice, choice records a change")
    await client.get("/calendar/2025/7")

    resp = await client.post(
        "/drops", json={"workerId": "w1", "dropAt": "2025-07-03T12:00:00+00:00"}
    )
    _p(f"POST /drops -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "choose"
    assert {c["shiftId"] for c in resp.json()["candidates"]} == {"s1", "s2"}

    state = (await client.get("/session")).json()
    assert state["dirty"] is False
    assert state["pendingChoice"]["workerId"] == "w1"

    resp = await client.post("/drops/choose", json={"shiftId": "s2"})
    assert resp.status_code == 200
    assert resp.json() == {
        "status": "assigned",
        "shiftId": "s2",
        "workerId": "w1",
        "via": "choice",
    }

    state = (await client.get("/session")).json()
    assert state["dirty"] is True
    assert state["pendingChanges"][0]["targetId"] == "s2"
    assert state["pendingChoice"] is None


@pytest.mark.asyncio
async def test_drop_without_target_is_a_bad_request(client: AsyncClient) -> None:
    await client.get("/calendar/2025/7")

    resp = await client.post("/drops", json={"workerId": "w1"})

    assert resp.status_code == 400
    assert "shift" in resp.json()["detail"].lower()


@pytest.mark.asyncio
async def test_edit_and_save(client: AsyncClient, backend: FakeBackend) -> None:
    _banner("patch + delete are buffered and saved in one batch")
    await client.get("/calendar/2025/7")

    resp = await client.patch(
        "/shifts/s1", json={"endAt": "2025-07-05T08:00:00+00:00", "comment": "long"}
    )
    _p(f"PATCH /shifts/s1 -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json()["shift"]["workingDaysCount"] == 2

    resp = await client.delete("/shifts/s2")
    assert resp.status_code == 200

    resp = await client.post("/save")
    _p(f"POST /save -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json()["saved"] == 2
    assert "2025-07" in resp.json()["invalidated"]

    (sent,) = backend.posted("batch-update")
    assert [c["kind"] for c in sent["changes"]] == ["update", "delete"]
    assert (await client.get("/session")).json()["dirty"] is False

    resp = await client.post("/save")
    assert resp.json() == {"status": "clean", "saved": 0}


@pytest.mark.asyncio
async def test_invalid_edit_is_a_bad_request(client: AsyncClient) -> None:
    await client.get("/calendar/2025/7")

    resp = await client.patch(
        "/shifts/s1", json={"endAt": "2025-07-03T07:00:00+00:00"}
    )

    assert resp.status_code == 400
    assert (await client.get("/session")).json()["dirty"] is False


@pytest.mark.asyncio
async def test_edit_times_without_offset_are_accepted(client: AsyncClient) -> None:
    _banner("edit form times without an offset use the shift timezone")
    await client.get("/calendar/2025/7")

    resp = await client.patch("/shifts/s1", json={"endAt": "2025-07-05T08:00:00"})
    _p(f"PATCH /shifts/s1 -> status={resp.status_code}, body={resp.json()}")

    assert resp.status_code == 200
    assert resp.json()["shift"]["endAt"].startswith("2025-07-05T08:00:00")
    assert resp.json()["shift"]["workingDaysCount"] == 2

    resp = await client.patch("/shifts/s2", json={"endAt": "2025-07-03T07:00:00"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_failed_save_keeps_changes(
    client: AsyncClient, backend: FakeBackend
) -> None:
    _banner("backend failure on save maps to 502 and keeps the ledger")
    await client.get("/calendar/2025/7")
    await client.post("/drops", json={"workerId": "w1", "targetShiftId": "s1"})

    backend.fail_status = 500
    resp = await client.post("/save")
    _p(f"POST /save -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 502
    assert (await client.get("/session")).json()["dirty"] is True

    backend.fail_status = None
    backend.respond("batch-update", {"error": "Month is locked"}, status=409)
    resp = await client.post("/save")
    assert resp.status_code == 422
    assert resp.json()["detail"] == "Month is locked"

    notes = (await client.get("/notifications")).json()
    assert [n["level"] for n in notes if n["level"] == "error"] == ["error", "error"]
    assert (await client.get("/notifications")).json() == []


@pytest.mark.asyncio
async def test_admin_endpoints(client: AsyncClient, backend: FakeBackend) -> None:
    backend.respond("generate", {"success": True, "created": 12})
    await client.get("/calendar/2025/7")

    resp = await client.post(
        "/admin/generate",
        json={"templateId": "t1", "startDate": "2025-07-01", "endDate": "2025-07-31"},
    )
    assert resp.status_code == 200
    assert resp.json()["created"] == 12

    resp = await client.post(
        "/admin/generate",
        json={"templateId": "t1", "startDate": "2025-07-31", "endDate": "2025-07-01"},
    )
    assert resp.status_code == 400

    backend.respond(
        "validate-month", {"success": False, "message": "Unassigned shifts"}
    )
    resp = await client.post("/admin/validate-month", json={})
    assert resp.status_code == 422

    resp = await client.post("/admin/bulk-delete", json={"year": 2025, "month": 7})
    assert resp.status_code == 200
    assert backend.posted("bulk-delete") == [
        {"year": 2025, "month": 7, "locationId": None}
    ]


@pytest.mark.asyncio
async def test_immediate_assignment(client: AsyncClient, backend: FakeBackend) -> None:
    _banner("immediate assign posts at once and reloads the month")
    backend.respond(
        "assign", {"success": True, "warnings": ["Worker w1 already works that day"]}
    )
    await client.get("/calendar/2025/7")
    july_requests = len(backend.month_requests(2025, 7))

    resp = await client.post("/shifts/s1/assign", json={"workerId": "w1"})
    _p(f"POST /shifts/s1/assign -> status={resp.status_code}, body={resp.json()}")

    assert resp.status_code == 200
    assert resp.json()["warnings"][0]["message"] == "Worker w1 already works that day"
    assert backend.posted("assign") == [{"shiftId": "s1", "workerId": "w1"}]
    assert len(backend.month_requests(2025, 7)) == july_requests + 1
    assert (await client.get("/session")).json()["dirty"] is False

    backend.respond("assign", {"error": "Worker is absent"}, status=422)
    resp = await client.post("/shifts/s2/assign", json={"workerId": "w1"})
    assert resp.status_code == 422

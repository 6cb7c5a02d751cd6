import asyncio
import json
from typing import Any

import httpx
import pytest
import pytest_asyncio

from planning.config import PlanningSettings
from planning.gateway import CalendarGateway
from planning.session import PlanningSession

BASE_URL = "http://backend/api/planning-assignment"
BASE_PATH = "/api/planning-assignment"

OK = {"success": True, "warnings": []}


class FakeBackend:
    """
    In-process planning backend served through ``httpx.MockTransport``.

    Month payloads are keyed by (year, month); POST endpoints answer with
    whatever is registered in ``responses`` under their name. A month listed
    in ``month_gates`` is held until its event is set.
    """

    def __init__(self) -> None:
        self.months: dict[tuple[int, int], dict[str, Any]] = {}
        self.responses: dict[str, tuple[int, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_status: int | None = None
        self.gate: asyncio.Event | None = None
        self.month_gates: dict[tuple[int, int], asyncio.Event] = {}

    def respond(self, name: str, body: Any, status: int = 200) -> None:
        self.responses[name] = (status, body)

    def month_requests(
        self, year: int | None = None, month: int | None = None
    ) -> list[httpx.Request]:
        found = []
        for r in self.requests:
            parts = r.url.path.removeprefix(BASE_PATH).strip("/").split("/")
            if r.method != "GET" or parts[0] != "month-data":
                continue
            if year is not None and int(parts[1]) != year:
                continue
            if month is not None and int(parts[2]) != month:
                continue
            found.append(r)
        return found

    def posted(self, name: str) -> list[dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.method == "POST" and r.url.path == f"{BASE_PATH}/{name}"
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        parts = request.url.path.removeprefix(BASE_PATH).strip("/").split("/")
        key = None
        if request.method == "GET" and parts[0] == "month-data":
            key = (int(parts[1]), int(parts[2]))
            if key in self.month_gates:
                await self.month_gates[key].wait()
        await asyncio.sleep(0)

        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"error": "backend down"})

        if key is not None:
            return httpx.Response(200, json=self.months.get(key, {}))

        status, body = self.responses.get(parts[0], (200, OK))
        return httpx.Response(status, json=body)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def http_client(backend: FakeBackend):
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(backend.handler)
    ) as client:
        yield client


@pytest.fixture
def gateway(http_client: httpx.AsyncClient) -> CalendarGateway:
    return CalendarGateway(http_client, BASE_URL)


@pytest_asyncio.fixture
async def session(gateway: CalendarGateway):
    # prefetch off so request counts only reflect what a test asks for
    planning = PlanningSession(
        gateway, settings=PlanningSettings(prefetch_adjacent=False)
    )
    yield planning
    await planning.aclose()

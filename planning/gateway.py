"""
HTTP access to the planning backend.

Every transport or response problem is converted into a ``NetworkError`` or a
``ServerValidationError`` here, so callers only ever deal with planning errors.
"""

import asyncio
import logging
from collections.abc import Iterable, Sequence
from datetime import date
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from planning.errors import NetworkError, ServerValidationError
from planning.models import BatchResult, MonthData, PendingChange
from planning.months import MonthKey

logger = logging.getLogger(__name__)

_VALIDATION_STATUSES = {400, 404, 409, 422}


def merge_month_data(months: Iterable[MonthData]) -> MonthData:
    """
    Merge overlapping month payloads, keeping the first occurrence of each id.

    Adjacent month queries return entities that straddle the boundary twice.
    """
    months = list(months)
    merged = MonthData()
    for field in MonthData.model_fields:
        seen: set[str] = set()
        target: list[Any] = getattr(merged, field)
        for data in months:
            for item in getattr(data, field):
                if item.id in seen:
                    continue
                seen.add(item.id)
                target.append(item)
    return merged


class CalendarGateway:
    def __init__(self, http_client: httpx.AsyncClient, base_url: str = "") -> None:
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")

    async def fetch_month(self, year: int, month: int) -> MonthData:
        payload = await self._request("GET", f"/month-data/{year}/{month}")
        try:
            return MonthData.model_validate(payload)
        except ValidationError as exc:
            raise NetworkError(
                f"unexpected month payload for {year}-{month:02d}: {exc}"
            ) from exc

    async def fetch_window(self, key: MonthKey) -> MonthData:
        """
        Previous, current and next month in one merged payload.
        """
        results = await asyncio.gather(
            *(self.fetch_month(k.year, k.month) for k in key.adjacent())
        )
        return merge_month_data(results)

    async def assign(self, shift_id: str, worker_id: str) -> BatchResult:
        payload = await self._request(
            "POST", "/assign", json={"shiftId": shift_id, "workerId": worker_id}
        )
        return self._result(payload)

    async def batch_update(self, changes: Sequence[PendingChange]) -> BatchResult:
        body = {
            "changes": [
                c.model_dump(mode="json", by_alias=True, exclude={"timestamp"})
                for c in changes
            ]
        }
        payload = await self._request("POST", "/batch-update", json=body)
        return self._result(payload)

    async def generate_from_template(
        self,
        *,
        template_id: str,
        start_date: date,
        end_date: date,
        scope: str = "all",
        location_id: str | None = None,
    ) -> BatchResult:
        payload = await self._request(
            "POST",
            "/generate",
            json={
                "templateId": template_id,
                "startDate": start_date.isoformat(),
                "endDate": end_date.isoformat(),
                "scope": scope,
                "locationId": location_id,
            },
        )
        return self._result(payload)

    async def validate_month(self, year: int, month: int) -> BatchResult:
        payload = await self._request(
            "POST", "/validate-month", json={"year": year, "month": month}
        )
        return self._result(payload)

    async def bulk_delete(
        self, year: int, month: int | None = None, location_id: str | None = None
    ) -> BatchResult:
        payload = await self._request(
            "POST",
            "/bulk-delete",
            json={"year": year, "month": month, "locationId": location_id},
        )
        return self._result(payload)

    async def _request(
        self, method: str, path: str, *, json: dict[str, Any] | None = None
    ) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = await self._http_client.request(
                method,
                url,
                json=json,
                headers={
                    "Accept": "application/json",
                    "X-Requested-With": "XMLHttpRequest",
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        if response.status_code in _VALIDATION_STATUSES:
            raise ServerValidationError(
                _error_message(response), status_code=response.status_code
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise NetworkError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise NetworkError(f"{method} {path} returned invalid JSON") from exc

    @staticmethod
    def _result(payload: Any) -> BatchResult:
        try:
            result = BatchResult.model_validate(payload)
        except ValidationError as exc:
            raise NetworkError(f"unexpected response payload: {exc}") from exc
        if not result.success:
            raise ServerValidationError(result.message or "request rejected")
        return result


class ErrorBody(BaseModel):
    error: str | None = None
    message: str | None = None
    detail: str | None = None


def _error_message(response: httpx.Response) -> str:
    try:
        body = ErrorBody.model_validate(response.json())
    except (ValueError, ValidationError):
        text = response.text.strip()
        return " ".join(text.split())[:200] or f"HTTP {response.status_code}"
    return (
        body.error
        or body.message
        or body.detail
        or f"HTTP {response.status_code}"
    )

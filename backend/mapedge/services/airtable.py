"""Read-only client for the upstream table API.

The API pages through a table 100 records at a time; every page carries an
opaque ``offset`` token when more records follow.  :meth:`AirtableClient.fetch_page`
turns that into a bounded primitive: consume at most ``max_pages`` pages and
hand back the leftover cursor so the caller can continue later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence
from urllib.parse import quote

import httpx

from mapedge.config import settings
from mapedge.exceptions import UpstreamError
from mapedge.models.record import AirtableRecord

logger = logging.getLogger(__name__)


@dataclass
class PageBatch:
    records: list[AirtableRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None
    pages_used: int = 0


class AirtableClient:
    """Thin async wrapper over the table API's list and single-record reads."""

    def __init__(
        self,
        token: str | None = None,
        base_id: str | None = None,
        api_url: str | None = None,
        view: str | None = None,
        page_size: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self.token = token if token is not None else settings.AIRTABLE_TOKEN
        self.base_id = base_id if base_id is not None else settings.AIRTABLE_BASE_ID
        self.api_url = (api_url or settings.AIRTABLE_API_URL).rstrip("/")
        self.view = view if view is not None else settings.AIRTABLE_VIEW_NAME
        self.page_size = page_size or settings.EXPORT_PAGE_SIZE
        self.timeout = timeout or settings.AIRTABLE_TIMEOUT

    def table_url(self, table: str) -> str:
        return f"{self.api_url}/{self.base_id}/{quote(table, safe='')}"

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _list_params(
        self,
        fields: Sequence[str] | None,
        cursor: Optional[str],
        cell_format: Optional[str],
    ) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = [("pageSize", str(self.page_size))]
        if self.view:
            params.append(("view", self.view))
        if cell_format:
            params.append(("cellFormat", cell_format))
            if cell_format == "string":
                # Required by the API whenever cells are rendered as strings.
                params.extend([("timeZone", "UTC"), ("userLocale", "en-us")])
        for name in fields or ():
            if name:
                params.append(("fields[]", name))
        if cursor:
            params.append(("offset", cursor))
        return params

    async def _get_json(self, client: httpx.AsyncClient, url: str, table: str, params=None) -> dict[str, Any]:
        response = await client.get(url, params=params, headers=self.headers)
        if response.status_code < 200 or response.status_code >= 300:
            logger.error("Upstream read failed for table '%s': HTTP %s", table, response.status_code)
            raise UpstreamError(table, response.status_code, response.text or "")
        return response.json()

    async def fetch_page(
        self,
        table: str,
        fields: Sequence[str] | None = None,
        cursor: Optional[str] = None,
        max_pages: int | None = None,
        cell_format: Optional[str] = None,
    ) -> PageBatch:
        """Read up to ``max_pages`` pages starting at ``cursor``.

        ``next_cursor`` is ``None`` only when the table is exhausted.  On any
        non-success response the records read so far are discarded and
        :class:`UpstreamError` is raised; the caller's cursor stays valid.
        """
        budget = settings.clamp_max_pages(max_pages)
        url = self.table_url(table)
        records: list[AirtableRecord] = []
        next_cursor = cursor or None
        pages_used = 0

        logger.debug("Fetching table '%s' from cursor %r (max %d pages)", table, cursor, budget)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            while pages_used < budget:
                data = await self._get_json(
                    client, url, table, params=self._list_params(fields, next_cursor, cell_format)
                )
                pages_used += 1
                records.extend(AirtableRecord.from_api(r) for r in data.get("records") or [])
                next_cursor = data.get("offset") or None
                if next_cursor is None:
                    break

        logger.info(
            "Fetched %d records from '%s' in %d page(s); more=%s",
            len(records), table, pages_used, next_cursor is not None,
        )
        return PageBatch(records=records, next_cursor=next_cursor, pages_used=pages_used)

    async def fetch_all(
        self,
        table: str,
        fields: Sequence[str] | None = None,
        cell_format: Optional[str] = None,
    ) -> list[AirtableRecord]:
        """Read the whole table, one bounded batch after another."""
        records: list[AirtableRecord] = []
        cursor: Optional[str] = None
        while True:
            batch = await self.fetch_page(
                table, fields, cursor, max_pages=settings.EXPORT_MAX_MAX_PAGES, cell_format=cell_format
            )
            records.extend(batch.records)
            if batch.next_cursor is None:
                return records
            cursor = batch.next_cursor

    async def fetch_record(self, table: str, record_id: str) -> AirtableRecord:
        """Fetch one record; a missing record raises ``UpstreamError`` with status 404."""
        url = f"{self.table_url(table)}/{quote(record_id, safe='')}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            data = await self._get_json(client, url, table)
        return AirtableRecord.from_api(data)


def get_airtable_client() -> AirtableClient:
    """FastAPI dependency; overridden in tests."""
    return AirtableClient()

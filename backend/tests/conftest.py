"""Shared fixtures: an isolated checkpoint database, an in-memory blob store and
a scripted stand-in for the upstream table API."""

from __future__ import annotations

from typing import Optional, Sequence

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from mapedge.config import settings
from mapedge.db.database import create_tables, get_session_factory, make_engine
from mapedge.exceptions import UpstreamError
from mapedge.models.record import AirtableRecord
from mapedge.services.airtable import PageBatch, get_airtable_client
from mapedge.utils.storage import InMemoryBlobStore, get_blob_store

TOKEN = "test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


def record_id(n: int) -> str:
    return f"rec{n:014d}"


def org_record(n: int, lat=35.0, lon=-80.0, **fields) -> AirtableRecord:
    return AirtableRecord(
        id=record_id(n),
        fields={settings.FIELD_LAT: lat, settings.FIELD_LON: lon, "Org Name": f"Org {n}", **fields},
    )


class FakeTable:
    """Serves a fixed list of records the way the table API pages them.

    Cursors are stringified offsets.  ``fail_on_request`` makes the n-th page
    request (1-based, counted over the object's lifetime) raise ``UpstreamError``.
    """

    def __init__(self, records: Sequence[AirtableRecord] = (), page_size: int = 100) -> None:
        self.records = list(records)
        self.page_size = page_size
        self.page_requests = 0
        self.cursors: list[Optional[str]] = []
        self.fail_on_request: Optional[int] = None
        self.fail_status = 503
        self.record_lookups = 0

    async def fetch_page(self, table, fields=None, cursor=None, max_pages=None, cell_format=None) -> PageBatch:
        self.cursors.append(cursor)
        budget = settings.clamp_max_pages(max_pages)
        start = int(cursor) if cursor else 0
        out: list[AirtableRecord] = []
        pages = 0
        while pages < budget:
            self.page_requests += 1
            if self.fail_on_request == self.page_requests:
                raise UpstreamError(table, self.fail_status, "Service Unavailable")
            out.extend(self.records[start:start + self.page_size])
            pages += 1
            start += self.page_size
            if start >= len(self.records):
                return PageBatch(records=out, next_cursor=None, pages_used=pages)
        return PageBatch(records=out, next_cursor=str(start), pages_used=pages)

    async def fetch_all(self, table, fields=None, cell_format=None) -> list[AirtableRecord]:
        return list(self.records)

    async def fetch_record(self, table, rec_id) -> AirtableRecord:
        self.record_lookups += 1
        for record in self.records:
            if record.id == rec_id:
                return record
        raise UpstreamError(table, 404, '{"error":"NOT_FOUND"}')


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    create_tables(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def client(store, table, session_factory):
    from mapedge.main import app

    app.dependency_overrides[get_blob_store] = lambda: store
    app.dependency_overrides[get_airtable_client] = lambda: table
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

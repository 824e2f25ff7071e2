import asyncio

import ffmpeg
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from mapedge.exceptions import AttachmentFetchError, NotFoundError, UpstreamError, ValidationFailure
from mapedge.models.record import AirtableRecord
from mapedge.publishers import NETWORK_IMAGES, get_publisher
from mapedge.services import images
from mapedge.services.images import (
    ImageProxy,
    cache_key,
    prewarm_publisher,
    prewarm_records,
    render_image,
    run_bounded,
)

from .conftest import FakeTable, record_id

NETWORKS = get_publisher("networks")
PHOTO = NETWORK_IMAGES[0]


def _attachment(n):
    return {"id": f"att{n}", "url": f"https://cdn.test/{n}.jpg"}


def _network(n, photos=2):
    return AirtableRecord(id=record_id(n), fields={"Photo": [_attachment(i) for i in range(photos)]})


def _image_response(body=b"jpeg-bytes", status=200):
    response = MagicMock()
    response.status_code = status
    response.content = body
    response.headers = {"content-type": "image/jpeg"}
    return response


def test_cache_key():
    assert cache_key(record_id(1), "Photo", 0) == f"images/{record_id(1)}/photo/0"
    assert cache_key(record_id(1), "Hero Image!", 2) == f"images/{record_id(1)}/hero-image/2"


@pytest.mark.asyncio
async def test_run_bounded_limits_concurrency_and_survives_failures():
    running = 0
    peak = 0

    async def work(n):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        if n == 3:
            raise RuntimeError("boom")
        return n * 2

    results = await run_bounded(range(10), 4, work)

    assert peak == 4
    assert results == [0, 2, 4, None, 8, 10, 12, 14, 16, 18]
    assert await run_bounded([], 4, work) == []


@pytest.mark.asyncio
async def test_render_image_passthrough_when_disabled(monkeypatch):
    monkeypatch.setattr(images.settings, "IMAGE_RESIZE_ENABLED", False)
    assert await render_image(b"raw", "image/png") == (b"raw", "image/png")
    assert await render_image(b"raw", None) == (b"raw", "application/octet-stream")


@pytest.mark.asyncio
async def test_render_image_transcodes_to_webp(monkeypatch):
    monkeypatch.setattr(images.settings, "IMAGE_RESIZE_ENABLED", True)
    with patch("mapedge.services.images.transcode_image", return_value=b"webp") as mock_transcode:
        assert await render_image(b"raw", "image/png") == (b"webp", "image/webp")
    mock_transcode.assert_called_once_with(b"raw", 400, 80)


@pytest.mark.asyncio
async def test_render_image_falls_back_to_original(monkeypatch):
    monkeypatch.setattr(images.settings, "IMAGE_RESIZE_ENABLED", True)
    with patch(
        "mapedge.services.images.transcode_image",
        side_effect=ffmpeg.Error("ffmpeg", b"", b"Invalid data found"),
    ):
        assert await render_image(b"raw", "image/png") == (b"raw", "image/png")
    with patch("mapedge.services.images.transcode_image", side_effect=FileNotFoundError("ffmpeg")):
        assert await render_image(b"raw", "image/png") == (b"raw", "image/png")


# ---------------------------------------------------------------------------
# Prewarm
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@patch("httpx.AsyncClient.get", new_callable=AsyncMock)
async def test_prewarm_stores_every_attachment(mock_get, store):
    mock_get.return_value = _image_response()
    records = [_network(1), _network(2, photos=0), AirtableRecord(id=record_id(3), fields={"Photo": "junk"})]

    stats = await prewarm_records(records, [PHOTO], store)

    assert stats.as_dict() == {"records": 1, "stored": 2, "skipped": 0, "failed": 0}
    assert store.keys() == [cache_key(record_id(1), "Photo", 0), cache_key(record_id(1), "Photo", 1)]
    cached = await store.get(cache_key(record_id(1), "Photo", 0))
    assert cached.body == b"jpeg-bytes"
    assert cached.cache_control == "public, max-age=604800, immutable"


@pytest.mark.asyncio
@patch("httpx.AsyncClient.get", new_callable=AsyncMock)
async def test_prewarm_caps_attachments_per_record(mock_get, store):
    mock_get.return_value = _image_response()

    stats = await prewarm_records([_network(1, photos=9)], [PHOTO], store)

    assert stats.stored == 6
    assert mock_get.await_count == 6


@pytest.mark.asyncio
@patch("httpx.AsyncClient.get", new_callable=AsyncMock)
async def test_prewarm_skips_cached_unless_flushed(mock_get, store):
    mock_get.return_value = _image_response(b"new")
    await store.put(cache_key(record_id(1), "Photo", 0), b"old")

    stats = await prewarm_records([_network(1)], [PHOTO], store)
    assert stats.as_dict() == {"records": 1, "stored": 1, "skipped": 1, "failed": 0}
    assert (await store.get(cache_key(record_id(1), "Photo", 0))).body == b"old"

    stats = await prewarm_records([_network(1)], [PHOTO], store, flush=True)
    assert stats.stored == 2
    assert (await store.get(cache_key(record_id(1), "Photo", 0))).body == b"new"


@pytest.mark.asyncio
@patch("httpx.AsyncClient.get", new_callable=AsyncMock)
async def test_prewarm_counts_failures_and_keeps_going(mock_get, store):
    mock_get.side_effect = [_image_response(status=403), _image_response()]

    stats = await prewarm_records([_network(1)], [PHOTO], store)

    assert stats.failed == 1
    assert stats.stored == 1
    assert len(store.keys()) == 1


@pytest.mark.asyncio
@patch("httpx.AsyncClient.get", new_callable=AsyncMock)
async def test_prewarm_publisher_reads_image_columns(mock_get, store):
    mock_get.return_value = _image_response()
    table = FakeTable([_network(1, photos=1)])

    stats = await prewarm_publisher(NETWORKS, table, store)
    assert stats.stored == 1

    no_images = await prewarm_publisher(get_publisher("orgs"), table, store)
    assert no_images.as_dict() == {"records": 0, "stored": 0, "skipped": 0, "failed": 0}


# ---------------------------------------------------------------------------
# Pull-through proxy
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "rec, index",
    [
        ("nope", "0"),
        ("rec123", "0"),
        (record_id(1) + "\n", "0"),
        (record_id(1), "-1"),
        (record_id(1), "6"),
        (record_id(1), "x"),
        (record_id(1), "1.5"),
        (record_id(1), "0\n"),
        (record_id(1), "\u0663"),
    ],
)
def test_validate_rejects_bad_input(rec, index):
    with pytest.raises(ValidationFailure):
        ImageProxy.validate(rec, index)


def test_validate_accepts_indices_in_range():
    assert ImageProxy.validate(record_id(1), "0") == 0
    assert ImageProxy.validate(record_id(1), "5") == 5


@pytest.mark.asyncio
@patch("httpx.AsyncClient.get", new_callable=AsyncMock)
async def test_miss_then_hit(mock_get, store):
    mock_get.return_value = _image_response()
    table = FakeTable([_network(1)])
    proxy = ImageProxy(NETWORKS, PHOTO, table, store)

    served = await proxy.serve(record_id(1), "1")
    assert served.cache_hit is False
    assert served.body == b"jpeg-bytes"
    assert served.content_type == "image/jpeg"
    assert mock_get.call_args.args[0] == "https://cdn.test/1.jpg"
    assert store.keys() == []

    await proxy.write_cache(served)
    again = await proxy.serve(record_id(1), "1")

    assert again.cache_hit is True
    assert again.body == b"jpeg-bytes"
    assert table.record_lookups == 1
    assert mock_get.await_count == 1


@pytest.mark.asyncio
@patch("httpx.AsyncClient.get", new_callable=AsyncMock)
async def test_failed_cache_write_is_only_logged(mock_get, store):
    mock_get.return_value = _image_response()
    proxy = ImageProxy(NETWORKS, PHOTO, FakeTable([_network(1)]), store)
    served = await proxy.serve(record_id(1), "0")

    store.put = AsyncMock(side_effect=OSError("disk full"))
    await proxy.write_cache(served)

    store.put.assert_awaited_once()
    assert served.body == b"jpeg-bytes"


@pytest.mark.asyncio
async def test_unknown_record_is_404(store):
    proxy = ImageProxy(NETWORKS, PHOTO, FakeTable([]), store)
    with pytest.raises(NotFoundError, match="Record not found"):
        await proxy.serve(record_id(1), "0")


@pytest.mark.asyncio
async def test_upstream_failure_other_than_404_propagates(store):
    table = FakeTable([])
    table.fetch_record = AsyncMock(side_effect=UpstreamError("Networks", 500, "oops"))
    proxy = ImageProxy(NETWORKS, PHOTO, table, store)
    with pytest.raises(UpstreamError):
        await proxy.serve(record_id(1), "0")


@pytest.mark.asyncio
async def test_missing_attachment_index_is_404(store):
    proxy = ImageProxy(NETWORKS, PHOTO, FakeTable([_network(1, photos=2)]), store)
    with pytest.raises(NotFoundError, match="Photo URL missing"):
        await proxy.serve(record_id(1), "2")


@pytest.mark.asyncio
@patch("httpx.AsyncClient.get", new_callable=AsyncMock)
async def test_attachment_fetch_failure_is_502(mock_get, store):
    mock_get.return_value = _image_response(status=410)
    proxy = ImageProxy(NETWORKS, PHOTO, FakeTable([_network(1)]), store)

    with pytest.raises(AttachmentFetchError) as exc_info:
        await proxy.serve(record_id(1), "0")

    assert exc_info.value.status_code == 502
    assert exc_info.value.upstream_status == 410

import asyncio
import json
from unittest.mock import patch

import pytest

from mapedge.workers import tasks

from .conftest import FakeTable, org_record


@pytest.fixture
def worker_env(store, session_factory):
    table = FakeTable([org_record(i) for i in range(230)])
    with patch.object(tasks, "AirtableClient", return_value=table), \
            patch.object(tasks, "get_blob_store", return_value=store), \
            patch.object(tasks, "SessionLocal", session_factory), \
            patch.object(tasks, "create_tables"):
        yield table


def test_run_export_job_task_completes_job(worker_env, store):
    with patch.object(tasks.prewarm_images_task, "delay") as mock_delay:
        result = tasks.run_export_job_task("disaster-orgs", "worker-job", 1, "https://maps.test")

    assert result["status"] == "completed"
    assert result["jobId"] == "worker-job"
    assert result["features"] == 230
    assert worker_env.cursors == [None, "100", "200"]
    document = json.loads(asyncio.run(store.get("disaster/org_points.geojson")).body)
    assert len(document["features"]) == 230
    mock_delay.assert_not_called()


def test_prewarm_images_task_returns_stats(worker_env):
    result = tasks.prewarm_images_task("orgs")
    assert result == {"publisher": "orgs", "flush": False, "records": 0, "stored": 0, "skipped": 0, "failed": 0}


def test_unknown_publisher_fails_task():
    with pytest.raises(ValueError):
        tasks.prewarm_images_task("nope")

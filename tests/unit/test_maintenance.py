"""Unit tests for the maintenance scheduler"""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from fxpay_gateway.services.maintenance import MaintenanceScheduler, seconds_until


@pytest.mark.parametrize(
    "now,expected",
    [
        (datetime(2026, 3, 10, 1, 0), 3600.0),
        (datetime(2026, 3, 10, 1, 59, 30), 30.0),
        (datetime(2026, 3, 10, 2, 0), 86400.0),
        (datetime(2026, 3, 10, 14, 30), 41400.0),
    ],
)
def test_seconds_until_next_run(now, expected):
    assert seconds_until(2, now) == expected


def scheduler_with_mocks() -> MaintenanceScheduler:
    worker = MagicMock()
    worker.drain_pending = AsyncMock(return_value=2)
    return MaintenanceScheduler(
        session_factory=MagicMock(),
        rate_cache=MagicMock(),
        velocity=MagicMock(),
        idempotency=MagicMock(),
        worker=worker,
    )


async def test_sweep_purges_stores_and_redelivers():
    scheduler = scheduler_with_mocks()

    await scheduler.sweep()

    scheduler.idempotency.purge_expired.assert_called_once()
    scheduler.velocity.purge_stale.assert_called_once()
    scheduler.rate_cache.purge_expired.assert_called_once()
    scheduler.worker.drain_pending.assert_awaited_once()


async def test_failed_job_is_logged_and_loop_continues(caplog):
    scheduler = scheduler_with_mocks()
    job = AsyncMock(side_effect=RuntimeError("boom"))

    await scheduler._guarded("sweep", job)

    job.assert_awaited_once()
    assert "Background job failed" in caplog.text


async def test_start_and_stop_manage_tasks():
    scheduler = scheduler_with_mocks()

    scheduler.start()
    assert len(scheduler._tasks) == 3

    await scheduler.stop()
    assert scheduler._tasks == []

import asyncio

import pytest

from quincy.utils.tasks import abort_all


async def _forever():
    await asyncio.sleep(3600)


async def _fail():
    raise ValueError("broken")


@pytest.mark.asyncio
async def test_pending_tasks_are_cancelled():
    tasks = [asyncio.create_task(_forever()) for _ in range(3)]
    await asyncio.sleep(0)
    await abort_all(tasks)
    assert all(task.cancelled() for task in tasks)


@pytest.mark.asyncio
async def test_finished_and_failed_tasks_are_tolerated():
    failing = asyncio.create_task(_fail())
    pending = asyncio.create_task(_forever())
    await asyncio.sleep(0)
    await abort_all(iter([failing, pending]))
    assert pending.cancelled()
    assert isinstance(failing.exception(), ValueError)


@pytest.mark.asyncio
async def test_waits_for_cleanup_to_finish():
    cleaned = []

    async def worker():
        try:
            await asyncio.sleep(3600)
        finally:
            await asyncio.sleep(0)
            cleaned.append(True)

    task = asyncio.create_task(worker())
    await asyncio.sleep(0)
    await abort_all([task])
    assert cleaned == [True]
    assert task.done()
from __future__ import annotations

import asyncio
import logging

import pytest

from unixbridge.utils.tasks import TaskSet


@pytest.mark.asyncio()
async def test_spawn_and_wait() -> None:
    tasks = TaskSet('test')
    results: list[int] = []

    async def _append(value: int) -> None:
        await asyncio.sleep(0.01)
        results.append(value)

    first = tasks.spawn(_append(1))
    second = tasks.spawn(_append(2), name='second')
    assert first.get_name() == 'test-1'
    assert second.get_name() == 'test-second'
    assert len(tasks) == 2

    await tasks.wait()
    assert sorted(results) == [1, 2]
    assert len(tasks) == 0
    assert tasks.tasks == frozenset()


@pytest.mark.asyncio()
async def test_failed_task_is_logged_and_isolated(caplog) -> None:
    caplog.set_level(logging.ERROR)
    tasks = TaskSet('test')
    done = asyncio.Event()

    async def _fail() -> None:
        raise RuntimeError('Oh no!')

    async def _succeed() -> None:
        await asyncio.sleep(0.01)
        done.set()

    failed = tasks.spawn(_fail())
    tasks.spawn(_succeed())
    await tasks.wait()

    assert done.is_set()
    assert isinstance(failed.exception(), RuntimeError)
    assert any('Traceback' in record.message for record in caplog.records)
    assert any('Oh no!' in record.message for record in caplog.records)


@pytest.mark.asyncio()
async def test_cancel() -> None:
    tasks = TaskSet('test')
    cancelled = asyncio.Event()

    async def _forever() -> None:
        try:
            await asyncio.sleep(1000)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    task = tasks.spawn(_forever())
    await asyncio.sleep(0)
    await asyncio.wait_for(tasks.cancel(), 1)

    assert task.cancelled()
    assert cancelled.is_set()
    assert len(tasks) == 0


@pytest.mark.asyncio()
async def test_wait_includes_tasks_spawned_while_waiting() -> None:
    tasks = TaskSet('test')
    results: list[str] = []

    async def _child() -> None:
        results.append('child')

    async def _parent() -> None:
        tasks.spawn(_child())
        results.append('parent')

    tasks.spawn(_parent())
    await tasks.wait()
    assert sorted(results) == ['child', 'parent']

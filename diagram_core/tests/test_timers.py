import asyncio

from diagram_core.sync.timers import TaskScheduler


def test_interval_keeps_running_after_callback_error():
    calls = []

    async def tick():
        calls.append(len(calls))
        if len(calls) == 1:
            raise KeyError("id")

    async def run():
        timers = TaskScheduler()
        timers.start_interval("pull", 0.005, tick)
        await asyncio.sleep(0.06)
        assert timers.has_interval("pull")
        timers.close()

    asyncio.run(run())
    assert len(calls) >= 2


def test_schedule_replaces_previous_timer_for_key():
    fired = []

    async def run():
        timers = TaskScheduler()

        async def first():
            fired.append("first")

        async def second():
            fired.append("second")

        timers.schedule("push:c1", 0.01, first)
        timers.schedule("push:c1", 0.01, second)
        assert timers.pending_keys() == {"push:c1"}
        await asyncio.sleep(0.04)
        assert not timers.is_pending("push:c1")
        timers.close()

    asyncio.run(run())
    assert fired == ["second"]


def test_failed_background_task_is_discarded():
    async def boom():
        raise ValueError("bad")

    async def run():
        timers = TaskScheduler()
        task = timers.spawn(boom)
        await asyncio.sleep(0.01)
        assert task.done()
        assert task not in timers._tasks
        timers.close()
        assert timers.spawn(boom) is None

    asyncio.run(run())

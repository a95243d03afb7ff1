"""
Tests para las tareas en segundo plano y el planificador diario.
"""
import asyncio
import logging
from datetime import datetime, timezone

import pytest

from app.services.background import DailyJobScheduler, pending_background_tasks, run_background_task


class TestRunBackgroundTask:

    def test_completed(self):
        results = []

        async def work():
            results.append("done")

        async def main():
            watcher = run_background_task("work", work(), timeout=1)
            return await watcher

        assert asyncio.run(main()) == "completed"
        assert results == ["done"]

    def test_caller_is_not_blocked(self):
        """El llamador sigue antes de que la tarea termine."""
        order = []

        async def work():
            await asyncio.sleep(0.01)
            order.append("task")

        async def main():
            watcher = run_background_task("slow", work(), timeout=1)
            order.append("caller")
            await watcher

        asyncio.run(main())
        assert order == ["caller", "task"]

    def test_timeout_does_not_cancel_task(self):
        finished = []

        async def work():
            await asyncio.sleep(0.05)
            finished.append(True)

        async def main():
            watcher = run_background_task("slow", work(), timeout=0.01)
            outcome = await watcher
            await asyncio.sleep(0.1)
            return outcome

        assert asyncio.run(main()) == "timeout"
        assert finished == [True]

    def test_failure_is_logged_not_raised(self, caplog):
        async def work():
            raise ValueError("boom")

        async def main():
            return await run_background_task("broken", work(), timeout=1)

        with caplog.at_level(logging.ERROR, logger="app.services.background"):
            assert asyncio.run(main()) == "failed"
        assert "Background task 'broken' failed: boom" in caplog.text

    def test_sync_callable_runs_in_thread(self):
        results = []

        async def main():
            return await run_background_task("sync", lambda: results.append(42), timeout=1)

        assert asyncio.run(main()) == "completed"
        assert results == [42]

    def test_requires_running_loop(self):
        with pytest.raises(RuntimeError):
            run_background_task("orphan", lambda: None)

    def test_rejects_non_callables(self):
        async def main():
            run_background_task("bad", 42)

        with pytest.raises(TypeError):
            asyncio.run(main())

    def test_tasks_are_released(self):
        async def main():
            await run_background_task("quick", lambda: None, timeout=1)
            await asyncio.sleep(0)

        asyncio.run(main())
        assert pending_background_tasks() == 0


class TestDailyJobScheduler:

    def test_invalid_hour(self):
        scheduler = DailyJobScheduler()
        with pytest.raises(ValueError):
            scheduler.add_job("bad", 24, lambda: None)

    def test_runs_once_per_day(self):
        calls = []
        scheduler = DailyJobScheduler()
        scheduler.add_job("reminder", 9, lambda: calls.append(1))

        nine = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert asyncio.run(scheduler.run_pending(nine)) == ["reminder"]
        assert asyncio.run(scheduler.run_pending(nine.replace(minute=30))) == []
        assert asyncio.run(scheduler.run_pending(datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))) == []
        assert asyncio.run(scheduler.run_pending(datetime(2026, 3, 3, 9, 5, tzinfo=timezone.utc))) == ["reminder"]
        assert calls == [1, 1]

    def test_due_jobs(self):
        scheduler = DailyJobScheduler()
        scheduler.add_job("morning", 9, lambda: None)
        scheduler.add_job("evening", 18, lambda: None)

        due = scheduler.due_jobs(datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc))
        assert [job.name for job in due] == ["evening"]
        assert scheduler.jobs == ["morning", "evening"]

    def test_coroutine_job(self):
        calls = []

        async def job():
            calls.append("async")

        scheduler = DailyJobScheduler()
        scheduler.add_job("async", 0, job)
        asyncio.run(scheduler.run_pending(datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)))
        assert calls == ["async"]

    def test_failing_job_does_not_stop_others(self, caplog):
        calls = []

        def broken():
            raise RuntimeError("fallo")

        scheduler = DailyJobScheduler()
        scheduler.add_job("broken", 9, broken)
        scheduler.add_job("ok", 9, lambda: calls.append(1))

        with caplog.at_level(logging.ERROR, logger="app.services.background"):
            ran = asyncio.run(scheduler.run_pending(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)))

        assert ran == ["broken", "ok"]
        assert calls == [1]
        assert "Daily job 'broken' failed" in caplog.text

    def test_stop(self):
        async def main():
            scheduler = DailyJobScheduler(poll_interval_seconds=0.01)
            task = asyncio.create_task(scheduler.start())
            await asyncio.sleep(0.02)
            assert scheduler.running
            scheduler.stop()
            await asyncio.wait_for(task, timeout=1)
            return scheduler.running

        assert asyncio.run(main()) is False

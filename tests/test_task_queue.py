import pytest

from speculate.services.task_queue import TaskQueue, task_queue


@pytest.fixture
def queue(app):
    queue = TaskQueue()
    queue.init_app(app)
    return queue


class TestTaskQueue:
    def test_runs_inline_without_scheduler(self, queue):
        calls = []

        @queue.register("record")
        def record(value):
            calls.append(value)

        queue.enqueue("record", value=42)

        assert calls == [42]
        assert queue.get_status()["stats"]["succeeded"] == 1

    def test_retries_then_succeeds(self, queue):
        attempts = []

        @queue.register("flaky")
        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("database is locked")

        queue.enqueue("flaky")

        stats = queue.get_status()["stats"]
        assert len(attempts) == 2
        assert stats["retried"] == 1
        assert stats["succeeded"] == 1
        assert stats["failed"] == 0

    def test_failure_never_reaches_caller(self, app, queue):
        attempts = []

        @queue.register("broken")
        def broken():
            attempts.append(1)
            raise RuntimeError("boom")

        queue.enqueue("broken")

        stats = queue.get_status()["stats"]
        assert len(attempts) == app.config["TASK_MAX_RETRIES"]
        assert stats["failed"] == 1
        assert stats["last_error"] == "boom"

    def test_unknown_task(self, queue):
        with pytest.raises(KeyError):
            queue.enqueue("missing")

    def test_stats_handlers_registered(self, app):
        handlers = task_queue.get_status()["handlers"]
        assert "update_stats_after_pick" in handlers
        assert "update_stats_after_resolve" in handlers


class FakeScheduler:
    running = True

    def __init__(self):
        self.jobs = []

    def add_job(self, **kwargs):
        self.jobs.append(kwargs)


class TestBackgroundDelivery:
    @pytest.fixture
    def background(self, app, queue, monkeypatch):
        app.config["TASKS_EAGER"] = False
        scheduler = FakeScheduler()
        monkeypatch.setattr(queue, "_own_scheduler", lambda: scheduler)
        return scheduler

    def test_enqueue_does_not_run_in_caller(self, queue, background):
        calls = []

        @queue.register("record")
        def record(value):
            calls.append(value)

        queue.enqueue("record", value=42)

        assert calls == []
        assert [job["args"] for job in background.jobs] == [["record", {"value": 42}, 1]]

        queue._run(*background.jobs[0]["args"])
        assert calls == [42]
        assert queue.get_status()["stats"]["succeeded"] == 1

    def test_failed_attempt_is_rescheduled(self, queue, background):
        @queue.register("broken")
        def broken():
            raise RuntimeError("database is locked")

        queue._run("broken", {}, 1)

        assert [job["args"] for job in background.jobs] == [["broken", {}, 2]]
        assert queue.get_status()["stats"]["retried"] == 1

        queue._run("broken", {}, 2)
        assert len(background.jobs) == 1
        assert queue.get_status()["stats"]["failed"] == 1

    def test_own_scheduler_starts_once(self, queue):
        scheduler = queue._own_scheduler()
        try:
            assert scheduler.running
            assert queue._own_scheduler() is scheduler
            assert queue.get_status()["own_scheduler_running"] is True
        finally:
            queue.shutdown()

        assert queue.get_status()["own_scheduler_running"] is False

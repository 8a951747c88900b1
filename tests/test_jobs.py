"""
Background job tests: non-blocking start, status polling, cancellation
between chunks and registry expiry.
"""

import pytest

from conftest import BlockingGenerator, ScriptedGenerator
from jobs import JobRunner, SessionRegistry


@pytest.fixture
def make_runner(make_orchestrator):
    runners = []

    def _make(generator=None, **kwargs):
        runner = JobRunner(make_orchestrator(generator=generator), **kwargs)
        runners.append(runner)
        return runner

    yield _make
    for runner in runners:
        runner.shutdown(wait=True)


class TestJobRunner:

    def test_start_returns_before_session_finishes(self, make_runner):
        generator = BlockingGenerator()
        runner = make_runner(generator)
        job_id = runner.start({})
        assert generator.entered.wait(timeout=5)
        status = runner.status(job_id)
        assert status["status"] == "running"
        assert status["last_chunk_index"] == 0
        assert runner.latest_snapshot(job_id) is None

        generator.release.set()
        final = runner.wait(job_id, timeout=30)
        assert final["status"] == "complete"
        assert final["cumulative_word_count"] == 300
        assert final["last_chunk_index"] == 3
        assert final["result"]["text"].startswith("chunk1")

    def test_cancel_stops_at_next_chunk_boundary(self, make_runner):
        generator = BlockingGenerator()
        runner = make_runner(generator)
        job_id = runner.start({})
        assert generator.entered.wait(timeout=5)
        assert runner.cancel(job_id) is True

        generator.release.set()
        final = runner.wait(job_id, timeout=30)
        assert final["status"] == "failed"
        assert final["error"] == "cancelled"
        assert final["last_chunk_index"] == 1
        assert runner.cancel(job_id) is False

    def test_latest_snapshot_reads_last_checkpoint(self, make_runner):
        runner = make_runner(ScriptedGenerator())
        job_id = runner.start({"rule_count": 4})
        runner.wait(job_id, timeout=30)
        snapshot = runner.latest_snapshot(job_id)
        assert snapshot["session_id"] == runner.status(job_id)["session_id"]
        assert len(snapshot["rules"]) == 4

    def test_job_and_session_ids_are_unique(self, make_runner):
        runner = make_runner(ScriptedGenerator())
        ids = [runner.start({}) for _ in range(3)]
        for job_id in ids:
            runner.wait(job_id, timeout=30)
        assert len(set(ids)) == 3
        assert len({runner.status(j)["session_id"] for j in ids}) == 3

    def test_failed_session_reports_error(self, make_runner):
        from errors import GenerationError

        runner = make_runner(ScriptedGenerator({1: [GenerationError("down")] * 3}))
        job_id = runner.start({})
        final = runner.wait(job_id, timeout=30)
        assert final["status"] == "failed"
        assert final["error"].startswith("GenerationError")
        assert "text" not in final["result"]

    def test_unknown_job_id_raises(self, make_runner):
        runner = make_runner()
        with pytest.raises(KeyError):
            runner.status("job-missing")
        with pytest.raises(KeyError):
            runner.cancel("job-missing")


class TestSessionRegistry:

    def test_finished_jobs_expire_after_ttl(self):
        now = [100.0]
        registry = SessionRegistry(ttl_s=10, clock=lambda: now[0])
        done = registry.create({})
        running = registry.create({})
        registry.finish(done.job_id, status="complete")

        assert registry.expire(now=105.0) == []
        assert registry.expire(now=111.0) == [done.job_id]
        with pytest.raises(KeyError):
            registry.get(done.job_id)
        assert registry.get(running.job_id).status == "running"

    def test_expired_ids_are_not_reissued(self):
        registry = SessionRegistry(ttl_s=0)
        first = registry.create({})
        registry.finish(first.job_id, status="failed", error="x")
        registry.expire()
        second = registry.create({})
        assert second.job_id != first.job_id

"""Tests for flow health and the problem-flow report."""

import pytest

from flowmill.models import JobStatus
from flowmill.services import health_monitor
from flowmill.services.health_monitor import leading_run
from flowmill.settings import settings

F = JobStatus.failed
N = JobStatus.completed_no_items
C = JobStatus.completed


def test_leading_run():
    assert leading_run([F, F, C, F], F) == 2
    assert leading_run([C, F], F) == 0
    assert leading_run([], F) == 0
    assert leading_run([N, N, N], N) == 3


class TestFlowHealth:
    """Consecutive runs counted newest first."""

    @pytest.fixture
    def record(self, runtime):
        """Record finished jobs for a flow, oldest first."""

        async def _record(flow, *statuses: JobStatus):
            for status in statuses:
                job = await runtime.job_manager.create(flow.flow_id, flow.pipeline_id)
                if status == JobStatus.processing:
                    await runtime.job_manager.start(job)
                elif status == JobStatus.failed:
                    await runtime.job_manager.fail(job, "boom")
                elif status != JobStatus.pending:
                    await runtime.job_manager.complete(job, status)

        return _record

    @pytest.mark.asyncio
    async def test_flow_without_jobs(self, runtime, create_pipeline):
        _, flow = await create_pipeline()
        health = await runtime.health.get_flow_health(flow.flow_id)
        assert health.as_dict() == {
            "consecutive_failures": 0,
            "consecutive_no_items": 0,
            "latest_job": None,
        }

    @pytest.mark.asyncio
    async def test_runs_broken_by_other_statuses(self, runtime, create_pipeline, record):
        _, flow = await create_pipeline()
        await record(flow, F, F, C, F, F, F)

        health = await runtime.health.get_flow_health(flow.flow_id)

        assert health.consecutive_failures == 3
        assert health.consecutive_no_items == 0
        assert health.latest_job.status == JobStatus.failed

    @pytest.mark.asyncio
    async def test_no_items_run(self, runtime, create_pipeline, record):
        _, flow = await create_pipeline()
        await record(flow, F, N, N)

        health = await runtime.health.get_flow_health(flow.flow_id)

        assert health.consecutive_no_items == 2
        assert health.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_running_jobs_are_ignored(self, runtime, create_pipeline, record):
        _, flow = await create_pipeline()
        await record(flow, F, F, JobStatus.processing, JobStatus.pending)

        health = await runtime.health.get_flow_health(flow.flow_id)

        assert health.consecutive_failures == 2
        # the newest job is still reported as latest
        assert health.latest_job.status == JobStatus.pending
        assert health.as_dict()["latest_job"]["completed_at"] is None

    @pytest.mark.asyncio
    async def test_runs_span_history_pages(
        self, runtime, create_pipeline, record, monkeypatch
    ):
        monkeypatch.setattr(health_monitor, "HISTORY_PAGE_SIZE", 2)
        _, flow = await create_pipeline()
        await record(flow, C, F, F, F, F, F)

        health = await runtime.health.get_flow_health(flow.flow_id)

        assert health.consecutive_failures == 5

    @pytest.mark.asyncio
    async def test_problem_flows(self, runtime, create_pipeline, record):
        _, failing = await create_pipeline("Failing")
        _, idle = await create_pipeline("Idle")
        _, healthy = await create_pipeline("Healthy")
        await record(failing, C, F, F, F)
        await record(idle, N, N, N, N)
        await record(healthy, F, F, F, C)

        report = await runtime.health.get_problem_flows(3)

        assert report["threshold"] == 3
        [entry] = report["failing"]
        assert entry["flow_id"] == failing.flow_id
        assert entry["consecutive_failures"] == 3
        assert entry["description"] == (
            f"Failing (Flow #{failing.flow_id}) - 3 consecutive failures - investigate errors"
        )
        [entry] = report["idle"]
        assert entry["flow_id"] == idle.flow_id
        assert entry["description"] == (
            f"Idle (Flow #{idle.flow_id}) - 4 runs with no new items - consider lowering interval"
        )

    @pytest.mark.asyncio
    async def test_threshold_filters(self, runtime, create_pipeline, record):
        _, flow = await create_pipeline()
        await record(flow, F, F)

        assert (await runtime.health.get_problem_flows(3))["failing"] == []
        assert len((await runtime.health.get_problem_flows(2))["failing"]) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("threshold", [None, 0, -1])
    async def test_threshold_falls_back_to_setting(self, runtime, threshold):
        report = await runtime.health.get_problem_flows(threshold)
        assert report == {
            "failing": [],
            "idle": [],
            "threshold": settings.problem_flow_threshold,
        }

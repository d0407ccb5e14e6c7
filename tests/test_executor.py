"""Tests for the workflow executor in database-flow and ephemeral modes."""

from datetime import timedelta

import pytest

from flowmill.exceptions import (
    FirstStepNotFoundError,
    FlowNotFoundError,
    SchedulingError,
    ValidationError,
)
from flowmill.models import DIRECT, JobStatus, utcnow
from flowmill.services.engine import DRY_RUN_MESSAGE, ExecuteWorkflowRequest
from flowmill.services.scheduling.bridge import EXECUTE_STEP, JOB_GROUP

# ─── Input validation ───────────────────────────────────────────────────────


class TestExecuteValidation:
    """Checks done before any job is created."""

    @pytest.mark.asyncio
    async def test_requires_flow_or_workflow(self, runtime):
        with pytest.raises(ValidationError, match="Must provide either flow_id or workflow"):
            await runtime.executor.execute(ExecuteWorkflowRequest())

    @pytest.mark.asyncio
    async def test_rejects_flow_and_workflow(self, runtime):
        request = ExecuteWorkflowRequest(flow_id=1, workflow={"steps": [{"type": "ai"}]})
        with pytest.raises(ValidationError, match="Cannot provide both flow_id and workflow"):
            await runtime.executor.execute(request)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("flow_id", [0, -3, "abc"])
    async def test_rejects_bad_flow_id(self, runtime, flow_id):
        with pytest.raises(ValidationError, match="flow_id must be a positive integer"):
            await runtime.executor.execute_flow(flow_id)

    @pytest.mark.asyncio
    async def test_rejects_count_with_future_timestamp(self, runtime, create_pipeline):
        _, flow = await create_pipeline()
        future = utcnow() + timedelta(hours=1)

        with pytest.raises(ValidationError, match="Cannot schedule multiple runs with a timestamp"):
            await runtime.executor.execute_flow(flow.flow_id, count=3, timestamp=future)

        _, total = await runtime.job_manager.list_jobs()
        assert total == 0

    @pytest.mark.asyncio
    async def test_missing_flow(self, runtime):
        with pytest.raises(FlowNotFoundError, match="Flow 404 not found"):
            await runtime.executor.execute_flow(404)


# ─── Database-flow mode ─────────────────────────────────────────────────────


class TestExecuteFlow:
    """Running stored flows."""

    @pytest.mark.asyncio
    async def test_immediate_single_run(self, runtime, bridge, create_pipeline):
        pipeline, flow = await create_pipeline()

        result = await runtime.executor.execute(ExecuteWorkflowRequest(flow_id=flow.flow_id))

        assert result["execution_mode"] == "database"
        assert result["execution_type"] == "immediate"
        assert result["flow_name"] == "Tech news"
        assert result["dry_run"] is False
        assert "job_ids" not in result

        job = await runtime.job_manager.get(result["job_id"])
        assert job.status == JobStatus.pending
        assert job.flow_id == str(flow.flow_id)
        assert job.pipeline_id == str(pipeline.pipeline_id)
        assert set(job.engine_data["flow_config"]) == set(flow.flow_config)

        [action] = bridge.pending_steps()
        first_step = next(s for s in flow.flow_config.values() if s["execution_order"] == 0)
        assert action.group == JOB_GROUP
        assert action.timestamp is None
        assert action.args == {"job_id": job.job_id, "flow_step_id": first_step["flow_step_id"]}

    @pytest.mark.asyncio
    async def test_count_creates_independent_jobs(self, runtime, bridge, create_pipeline):
        _, flow = await create_pipeline()

        result = await runtime.executor.execute_flow(flow.flow_id, count=3)

        assert result["count"] == 3
        assert len(set(result["job_ids"])) == 3
        assert "job_id" not in result
        scheduled = {a.args["job_id"] for a in bridge.pending_steps()}
        assert scheduled == set(result["job_ids"])

    @pytest.mark.asyncio
    async def test_count_is_clamped(self, runtime, create_pipeline):
        _, flow = await create_pipeline()

        result = await runtime.executor.execute_flow(flow.flow_id, count=50)
        assert result["count"] == 10

        result = await runtime.executor.execute_flow(flow.flow_id, count=0)
        assert "job_id" in result

    @pytest.mark.asyncio
    async def test_delayed_run(self, runtime, bridge, create_pipeline):
        _, flow = await create_pipeline()
        future = utcnow() + timedelta(minutes=30)

        result = await runtime.executor.execute_flow(flow.flow_id, timestamp=future)

        assert result["execution_type"] == "delayed"
        [action] = bridge.pending_steps()
        assert action.timestamp == future

    @pytest.mark.asyncio
    async def test_past_timestamp_runs_immediately(self, runtime, bridge, create_pipeline):
        _, flow = await create_pipeline()
        past = utcnow() - timedelta(minutes=5)

        result = await runtime.executor.execute_flow(flow.flow_id, count=2, timestamp=past)

        assert result["execution_type"] == "immediate"
        assert result["count"] == 2

    @pytest.mark.asyncio
    async def test_initial_data_and_dry_run_seed_engine_data(self, runtime, create_pipeline):
        _, flow = await create_pipeline()

        result = await runtime.executor.execute_flow(
            flow.flow_id, initial_data={"campaign": "spring"}, dry_run=True
        )

        job = await runtime.job_manager.get(result["job_id"])
        assert job.engine_data["campaign"] == "spring"
        assert job.engine_data["dry_run_mode"] is True

    @pytest.mark.asyncio
    async def test_flow_without_first_step_keeps_job(self, runtime, bridge, create_pipeline):
        _, flow = await create_pipeline(steps=[])

        with pytest.raises(FirstStepNotFoundError, match="Could not determine first step"):
            await runtime.executor.execute_flow(flow.flow_id)

        jobs, total = await runtime.job_manager.list_jobs(flow_id=flow.flow_id)
        assert total == 1
        assert jobs[0].status == JobStatus.pending
        assert bridge.pending_steps() == []

    @pytest.mark.asyncio
    async def test_scheduling_failure_keeps_job(self, runtime, bridge, create_pipeline):
        _, flow = await create_pipeline()
        bridge.fail = True

        with pytest.raises(SchedulingError, match="Failed to schedule workflow execution"):
            await runtime.executor.execute_flow(flow.flow_id)

        jobs, total = await runtime.job_manager.list_jobs(flow_id=flow.flow_id)
        assert total == 1
        assert jobs[0].status == JobStatus.pending

    @pytest.mark.asyncio
    async def test_run_flow_returns_job_id(self, runtime, create_pipeline):
        _, flow = await create_pipeline()
        job_id = await runtime.executor.run_flow(flow.flow_id)
        job = await runtime.job_manager.get(job_id)
        assert job.flow_id == str(flow.flow_id)


# ─── Ephemeral mode ─────────────────────────────────────────────────────────


class TestExecuteEphemeral:
    """Running inline workflows."""

    WORKFLOW = {
        "steps": [
            {"type": "fetch", "handler_slug": "rss", "handler_config": {"feed_url": "https://a"}},
            {"type": "ai", "user_message": "Rewrite", "model": "small", "provider": "local"},
            {"type": "publish", "handler_slug": "blog"},
        ]
    }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("workflow", "message"),
        [
            ({}, "Workflow must contain steps array"),
            ({"steps": []}, "Workflow must have at least one step"),
            ({"steps": [{"handler_slug": "rss"}]}, "Step 0 missing type"),
            ({"steps": [{"type": "ai"}, {"type": "email"}]}, "Step 1 has invalid type: email"),
            ({"steps": [{"type": "publish"}]}, "Step 0 missing handler_slug"),
        ],
    )
    async def test_invalid_workflows(self, runtime, workflow, message):
        with pytest.raises(ValidationError, match=message):
            await runtime.executor.execute_ephemeral(workflow)
        _, total = await runtime.job_manager.list_jobs()
        assert total == 0

    @pytest.mark.asyncio
    async def test_ai_step_needs_no_handler(self, runtime):
        result = await runtime.executor.execute_ephemeral({"steps": [{"type": "ai"}]})
        assert result["step_count"] == 1

    @pytest.mark.asyncio
    async def test_synthesized_configs(self, runtime, bridge):
        result = await runtime.executor.execute(ExecuteWorkflowRequest(workflow=self.WORKFLOW))

        assert result["execution_mode"] == "direct"
        assert result["step_count"] == 3
        assert result["dry_run"] is False

        job = await runtime.job_manager.get(result["job_id"])
        assert job.flow_id == DIRECT
        assert job.pipeline_id == DIRECT

        flow_config = job.engine_data["flow_config"]
        assert list(flow_config) == ["ephemeral_step_0", "ephemeral_step_1", "ephemeral_step_2"]
        assert flow_config["ephemeral_step_1"]["pipeline_step_id"] == "ephemeral_pipeline_1"
        assert flow_config["ephemeral_step_2"]["execution_order"] == 2
        assert flow_config["ephemeral_step_0"]["flow_id"] == DIRECT

        # only the AI step carries pipeline-level settings
        pipeline_config = job.engine_data["pipeline_config"]
        assert list(pipeline_config) == ["ephemeral_pipeline_1"]
        assert pipeline_config["ephemeral_pipeline_1"]["model"] == "small"
        assert pipeline_config["ephemeral_pipeline_1"]["label"] == "AI Agent"

        [action] = bridge.pending_steps()
        assert action.args["flow_step_id"] == "ephemeral_step_0"

    @pytest.mark.asyncio
    async def test_dry_run_flag(self, runtime):
        result = await runtime.executor.execute_ephemeral(self.WORKFLOW, dry_run=True)

        assert result["dry_run"] is True
        assert result["message"] == DRY_RUN_MESSAGE
        job = await runtime.job_manager.get(result["job_id"])
        assert job.engine_data["dry_run_mode"] is True

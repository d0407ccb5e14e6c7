"""Repository behavior against a real SQLite database."""

import pytest
import pytest_asyncio

from flowmill.exceptions import (
    FlowNotFoundError,
    FlowStepNotFoundError,
    InvalidStatusTransitionError,
    PipelineNotFoundError,
)
from flowmill.models import (
    ActionStatus,
    DeleteCriteria,
    Flow,
    JobStatus,
    Pipeline,
    ScheduledAction,
    args_key,
)
from flowmill.repositories import (
    FlowRepository,
    JobRepository,
    PipelineRepository,
    ProcessedItemRepository,
    ScheduledActionRepository,
)

# ─── Base repository ────────────────────────────────────────────────────────


class TestBaseRepository:
    """Generic CRUD through the pipeline repository."""

    @pytest.mark.asyncio
    async def test_create_get_update_delete(self, test_session):
        repo = PipelineRepository(test_session)

        pipeline = await repo.create(Pipeline(pipeline_name="News"))
        assert pipeline.pipeline_id is not None
        assert pipeline.created_at is not None

        pipeline = await repo.update(pipeline, {"pipeline_name": "World news"})
        assert (await repo.get(pipeline.pipeline_id)).pipeline_name == "World news"

        assert await repo.exists(pipeline_name="World news")
        assert await repo.count() == 1

        assert await repo.delete_by_id(pipeline.pipeline_id)
        assert await repo.get_optional(pipeline.pipeline_id) is None
        assert not await repo.delete_by_id(pipeline.pipeline_id)

    @pytest.mark.asyncio
    async def test_typed_not_found(self, test_session):
        with pytest.raises(PipelineNotFoundError, match="Pipeline 5 not found"):
            await PipelineRepository(test_session).get(5)
        with pytest.raises(FlowNotFoundError, match="Flow 5 not found"):
            await FlowRepository(test_session).get(5)


# ─── Flows ──────────────────────────────────────────────────────────────────


class TestFlowRepository:
    """Step lookup and per-pipeline listing."""

    @pytest_asyncio.fixture
    async def flow(self, test_session) -> Flow:
        pipeline = await PipelineRepository(test_session).create(Pipeline(pipeline_name="P"))
        repo = FlowRepository(test_session)
        flow = await repo.create(Flow(pipeline_id=pipeline.pipeline_id, flow_name="F"))
        step_id = f"{pipeline.pipeline_id}_abc_{flow.flow_id}"
        return await repo.save_config(
            flow,
            {
                step_id: {
                    "flow_step_id": step_id,
                    "step_type": "ai",
                    "pipeline_step_id": f"{pipeline.pipeline_id}_abc",
                    "execution_order": 0,
                }
            },
        )

    @pytest.mark.asyncio
    async def test_get_flow_step(self, test_session, flow):
        [step_id] = flow.flow_config
        found, step = await FlowRepository(test_session).get_flow_step(step_id)
        assert found.flow_id == flow.flow_id
        assert step["step_type"] == "ai"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("suffix", ["x", "999"])
    async def test_get_flow_step_missing(self, test_session, flow, suffix):
        with pytest.raises(FlowStepNotFoundError):
            await FlowRepository(test_session).get_flow_step(f"1_abc_{suffix}")

    @pytest.mark.asyncio
    async def test_save_config_persists_in_new_session(self, session_factory, flow):
        async with session_factory() as session:
            reloaded = await FlowRepository(session).get(flow.flow_id)
        assert reloaded.flow_config == flow.flow_config

    @pytest.mark.asyncio
    async def test_list_and_count_for_pipeline(self, test_session, flow):
        repo = FlowRepository(test_session)
        await repo.create(Flow(pipeline_id=flow.pipeline_id, flow_name="G"))

        flows = await repo.list_for_pipeline(flow.pipeline_id, offset=1, limit=5)
        assert [f.flow_name for f in flows] == ["G"]
        assert await repo.count_for_pipeline(flow.pipeline_id) == 2


# ─── Jobs ───────────────────────────────────────────────────────────────────


class TestJobRepository:
    """Status transitions and per-flow lookups."""

    @pytest.mark.asyncio
    async def test_transition_table(self, test_session):
        repo = JobRepository(test_session)
        job = await repo.create_job(1, 1)

        job = await repo.transition(job, JobStatus.processing)
        assert job.started_at is not None
        with pytest.raises(InvalidStatusTransitionError):
            await repo.transition(job, JobStatus.pending)

        job = await repo.transition(job, JobStatus.agent_skipped, {"note": "skip"})
        assert job.engine_data == {"note": "skip"}
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_latest_jobs_by_flow_ids(self, test_session):
        repo = JobRepository(test_session)
        await repo.create_job(1, 1)
        newest_1 = await repo.create_job(1, 1)
        newest_2 = await repo.create_job(2, 1)
        await repo.create_job(3, 1)

        latest = await repo.get_latest_jobs_by_flow_ids([1, 2, 4])

        assert {flow_id: job.job_id for flow_id, job in latest.items()} == {
            1: newest_1.job_id,
            2: newest_2.job_id,
        }
        assert await repo.get_latest_jobs_by_flow_ids([]) == {}

    @pytest.mark.asyncio
    async def test_ids_matching_and_delete(self, test_session):
        repo = JobRepository(test_session)
        keep = await repo.create_job(1, 1)
        failed = await repo.transition(await repo.create_job(1, 1), JobStatus.failed)

        assert await repo.ids_matching(DeleteCriteria.failed) == [failed.job_id]
        assert sorted(await repo.ids_matching(DeleteCriteria.all)) == [keep.job_id, failed.job_id]
        assert await repo.delete_by_ids([failed.job_id]) == 1
        assert await repo.delete_by_ids([]) == 0


# ─── Processed items ────────────────────────────────────────────────────────


class TestProcessedItemRepository:
    """Dedup records per flow step."""

    @pytest.mark.asyncio
    async def test_add_is_idempotent(self, test_session):
        repo = ProcessedItemRepository(test_session)
        assert await repo.add("a_1", "rss", "item", 1)
        assert not await repo.add("a_1", "rss", "item", 2)
        assert await repo.count() == 1

    @pytest.mark.asyncio
    async def test_delete_for_flow_matches_suffix_only(self, test_session):
        repo = ProcessedItemRepository(test_session)
        await repo.add("5_abc_1", "rss", "x", 1)
        await repo.add("5_def_1", "rss", "y", 1)
        await repo.add("5_abc_11", "rss", "z", 2)
        await repo.add("5_abc_21", "rss", "w", 3)

        assert await repo.delete_for_flow(1) == 2
        assert await repo.has_been_processed("5_abc_11", "rss", "z")
        assert await repo.has_been_processed("5_abc_21", "rss", "w")

    @pytest.mark.asyncio
    async def test_delete_for_flow_ignores_direct_run_steps(self, test_session):
        repo = ProcessedItemRepository(test_session)
        await repo.add("ephemeral_step_1", "rss", "x", 1)

        assert await repo.delete_for_flow(1) == 0

    @pytest.mark.asyncio
    async def test_get_record_reports_owner(self, test_session):
        repo = ProcessedItemRepository(test_session)
        await repo.add("5_abc_1", "rss", "x", 7)

        assert (await repo.get_record("5_abc_1", "rss", "x")).job_id == 7
        assert await repo.get_record("5_abc_1", "rss", "y") is None

    @pytest.mark.asyncio
    async def test_delete_for_flow_step_and_jobs(self, test_session):
        repo = ProcessedItemRepository(test_session)
        await repo.add("5_abc_1", "rss", "x", 1)
        await repo.add("5_abc_1", "rss", "y", 2)
        await repo.add("5_def_1", "rss", "z", 2)

        assert await repo.delete_for_flow_step("5_abc_1") == 2
        assert await repo.delete_for_jobs([2, 3]) == 1
        assert await repo.delete_for_jobs([]) == 0
        assert await repo.count() == 0


# ─── Scheduled actions ──────────────────────────────────────────────────────


class TestScheduledActionRepository:
    """Matching, claiming and canceling timer queue rows."""

    @staticmethod
    def _action(hook: str = "run_flow_now", **args) -> ScheduledAction:
        return ScheduledAction(hook=hook, args=args, args_key=args_key(args))

    @pytest.mark.asyncio
    async def test_claim_only_once(self, test_session, session_factory):
        repo = ScheduledActionRepository(test_session)
        action = await repo.create(self._action(flow_id=1))

        async with session_factory() as other_session:
            other = await ScheduledActionRepository(other_session).get(action.action_id)
            assert await ScheduledActionRepository(other_session).claim(other)

        assert not await repo.claim(action)

    @pytest.mark.asyncio
    async def test_cancel_pending_by_args(self, test_session):
        repo = ScheduledActionRepository(test_session)
        first = await repo.create(self._action(flow_id=1))
        second = await repo.create(self._action(flow_id=2))

        assert await repo.cancel_pending("run_flow_now", {"flow_id": 1}) == 1

        assert (await repo.refresh(first)).status == ActionStatus.canceled
        assert (await repo.refresh(second)).status == ActionStatus.pending
        assert [a.action_id for a in await repo.list_pending("run_flow_now")] == [
            second.action_id
        ]

    def test_args_key_is_order_independent(self):
        assert args_key({"b": 1, "a": 2}) == args_key({"a": 2, "b": 1})

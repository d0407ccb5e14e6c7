"""Tests for single-step configuration and bulk reconfiguration of flow steps."""

import pytest
import pytest_asyncio

from flowmill.exceptions import (
    FlowStepNotFoundError,
    HandlerNotFoundError,
    PipelineNotFoundError,
    ValidationError,
)
from flowmill.services.flow_step_service import map_handler_config

# ─── Field remapping ────────────────────────────────────────────────────────


class TestMapHandlerConfig:
    """Carrying config over when switching handlers."""

    TARGET = {"url": {}, "limit": {}, "max_items": {}}

    def test_explicit_mapping(self):
        mapped = map_handler_config(
            {"feed_url": "https://a", "max_items": 5}, self.TARGET, {"feed_url": "url"}
        )
        assert mapped == {"url": "https://a", "max_items": 5}

    def test_same_name_kept_only_when_declared(self):
        mapped = map_handler_config({"max_items": 5, "user_agent": "x"}, self.TARGET, None)
        assert mapped == {"max_items": 5}

    def test_mapping_to_undeclared_field_drops_value(self):
        mapped = map_handler_config({"feed_url": "https://a"}, self.TARGET, {"feed_url": "href"})
        assert mapped == {}

    def test_mapped_field_not_copied_under_old_name(self):
        target = {"max_items": {}, "limit": {}}
        mapped = map_handler_config({"max_items": 5}, target, {"max_items": "limit"})
        assert mapped == {"limit": 5}

    def test_target_without_fields(self):
        assert map_handler_config({"feed_url": "https://a"}, {}, {"feed_url": "url"}) == {}


# ─── Single step ────────────────────────────────────────────────────────────


class TestFlowStepConfig:
    """Reading and editing one flow step."""

    @pytest_asyncio.fixture
    async def steps(self, create_pipeline):
        _, flow = await create_pipeline()
        return [step["flow_step_id"] for step in flow.ordered_steps()]

    @pytest.mark.asyncio
    async def test_get(self, runtime, steps):
        step = await runtime.flow_steps.get(steps[0])
        assert step["handler_slug"] == "rss"
        assert step["handler_config"] == {"feed_url": "https://a.test"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("flow_step_id", ["nope", "abc_999", "abc_1"])
    async def test_get_missing(self, runtime, steps, flow_step_id):
        with pytest.raises(FlowStepNotFoundError):
            await runtime.flow_steps.get(flow_step_id)

    @pytest.mark.asyncio
    async def test_update_handler_merges_config(self, runtime, steps):
        await runtime.flow_steps.update_handler(steps[0], "rss", {"max_items": 10})

        step = await runtime.flow_steps.get(steps[0])
        assert step["handler_config"] == {"feed_url": "https://a.test", "max_items": 10}

    @pytest.mark.asyncio
    async def test_update_user_message(self, runtime, steps):
        assert await runtime.flow_steps.update_user_message(steps[1], "Write a haiku")
        step = await runtime.flow_steps.get(steps[1])
        assert step["user_message"] == "Write a haiku"
        # handler settings untouched
        assert (await runtime.flow_steps.get(steps[0]))["handler_slug"] == "rss"

    def test_validate_handler_config(self, runtime):
        runtime.flow_steps.validate_handler_config("rss", {"feed_url": "x"})
        runtime.flow_steps.validate_handler_config("social", {"anything": True})
        with pytest.raises(
            ValidationError,
            match="Unknown handler_config fields for rss: color. Valid fields: feed_url, max_items",
        ):
            runtime.flow_steps.validate_handler_config("rss", {"feed_url": "x", "color": "red"})

    @pytest.mark.asyncio
    async def test_update_flow_step_requires_a_field(self, runtime, steps):
        with pytest.raises(ValidationError, match="At least one of handler_slug"):
            await runtime.flow_steps.update_flow_step(steps[0])

    @pytest.mark.asyncio
    async def test_update_flow_step_switches_handler(self, runtime, steps):
        result = await runtime.flow_steps.update_flow_step(
            steps[2], handler_slug="social", handler_config={"hashtags": True}
        )
        assert result == {
            "flow_step_id": steps[2],
            "updated_fields": ["handler_slug", "handler_config"],
        }
        step = await runtime.flow_steps.get(steps[2])
        assert step["handler_slug"] == "social"
        assert step["handler_config"] == {"site": "main", "hashtags": True}

    @pytest.mark.asyncio
    async def test_update_flow_step_unknown_handler(self, runtime, steps):
        with pytest.raises(HandlerNotFoundError, match="Handler 'mastodon' not found"):
            await runtime.flow_steps.update_flow_step(steps[2], handler_slug="mastodon")

    @pytest.mark.asyncio
    async def test_update_flow_step_validates_against_current_handler(self, runtime, steps):
        with pytest.raises(ValidationError, match="Unknown handler_config fields for blog"):
            await runtime.flow_steps.update_flow_step(steps[2], handler_config={"color": "red"})

    @pytest.mark.asyncio
    async def test_config_without_any_handler(self, runtime, steps):
        with pytest.raises(ValidationError, match="handler_slug is required"):
            await runtime.flow_steps.update_flow_step(steps[1], handler_config={"x": 1})


# ─── Bulk reconfiguration ───────────────────────────────────────────────────


class TestConfigureFlowSteps:
    """Reconfiguring matching steps across all flows of a pipeline."""

    @pytest_asyncio.fixture
    async def pipeline(self, runtime, create_pipeline):
        pipeline, flow = await create_pipeline()
        await runtime.flow_service.duplicate(flow.flow_id, flow_name="Second flow")
        return pipeline

    @pytest.mark.asyncio
    async def test_switch_handler_with_field_map(self, runtime, pipeline):
        result = await runtime.flow_steps.configure_flow_steps(
            pipeline.pipeline_id,
            step_type="fetch",
            target_handler_slug="atom",
            field_map={"feed_url": "url"},
            handler_config={"limit": 20},
        )

        assert result["flows_updated"] == 2
        assert result["steps_modified"] == 2
        assert result["errors"] == []
        assert all(entry["switched_from"] == "rss" for entry in result["updated_steps"])

        flows, _ = await runtime.flow_service.list_for_pipeline(pipeline.pipeline_id)
        for flow in flows:
            fetch = flow.ordered_steps()[0]
            assert fetch["handler_slug"] == "atom"
            assert fetch["handler_config"] == {"url": "https://a.test", "limit": 20}

    @pytest.mark.asyncio
    async def test_handler_filter(self, runtime, pipeline):
        result = await runtime.flow_steps.configure_flow_steps(
            pipeline.pipeline_id, handler_slug="blog", handler_config={"category": "news"}
        )
        assert result["steps_modified"] == 2
        flows, _ = await runtime.flow_service.list_for_pipeline(pipeline.pipeline_id)
        assert flows[1].ordered_steps()[2]["handler_config"] == {
            "site": "main",
            "category": "news",
        }

    @pytest.mark.asyncio
    async def test_per_flow_overrides_and_skipped(self, runtime, pipeline):
        flows, _ = await runtime.flow_service.list_for_pipeline(pipeline.pipeline_id)
        result = await runtime.flow_steps.configure_flow_steps(
            pipeline.pipeline_id,
            step_type="publish",
            flow_configs={flows[0].flow_id: {"site": "staging"}, 9999: {"site": "x"}},
        )

        assert result["steps_modified"] == 1
        [skipped] = result["skipped"]
        assert skipped["flow_id"] == 9999
        assert skipped["error"] == f"Flow 9999 does not belong to pipeline {pipeline.pipeline_id}"
        step = await runtime.flow_steps.get(flows[0].ordered_steps()[2]["flow_step_id"])
        assert step["handler_config"]["site"] == "staging"

    @pytest.mark.asyncio
    async def test_invalid_config_reported_per_step(self, runtime, pipeline):
        result = await runtime.flow_steps.configure_flow_steps(
            pipeline.pipeline_id, step_type="fetch", handler_config={"color": "red"}
        )
        assert result["steps_modified"] == 0
        assert len(result["errors"]) == 2
        assert "Unknown handler_config fields for rss" in result["errors"][0]["error"]

    @pytest.mark.asyncio
    async def test_user_message_on_ai_steps(self, runtime, pipeline):
        result = await runtime.flow_steps.configure_flow_steps(
            pipeline.pipeline_id, step_type="ai", user_message="Be brief"
        )
        assert result["steps_modified"] == 2
        flows, _ = await runtime.flow_service.list_for_pipeline(pipeline.pipeline_id)
        assert {f.ordered_steps()[1]["user_message"] for f in flows} == {"Be brief"}

    @pytest.mark.asyncio
    async def test_unknown_target_handler(self, runtime, pipeline):
        with pytest.raises(HandlerNotFoundError, match="Target handler 'ghost' not found"):
            await runtime.flow_steps.configure_flow_steps(
                pipeline.pipeline_id, target_handler_slug="ghost"
            )

    @pytest.mark.asyncio
    async def test_unknown_pipeline(self, runtime):
        with pytest.raises(PipelineNotFoundError):
            await runtime.flow_steps.configure_flow_steps(404, step_type="fetch")

    @pytest.mark.asyncio
    async def test_pipeline_without_flows(self, runtime, pipeline):
        flows, _ = await runtime.flow_service.list_for_pipeline(pipeline.pipeline_id)
        for flow in flows:
            await runtime.flow_service.delete(flow.flow_id)

        with pytest.raises(ValidationError, match="No flows found for pipeline_id"):
            await runtime.flow_steps.configure_flow_steps(pipeline.pipeline_id, step_type="ai")

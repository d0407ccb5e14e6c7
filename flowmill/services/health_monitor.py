"""
Flow health monitoring.

Health is derived from job history: the leading run of ``failed`` jobs and,
independently, the leading run of ``completed_no_items`` jobs, both counted
newest first.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from flowmill.models import Flow, Job, JobStatus
from flowmill.repositories import FlowRepository, JobRepository
from flowmill.settings import settings

HISTORY_PAGE_SIZE = 50


@dataclass
class FlowHealth:
    """Derived health snapshot of a flow."""

    consecutive_failures: int = 0
    consecutive_no_items: int = 0
    latest_job: Job | None = None

    def as_dict(self) -> dict[str, Any]:
        latest = None
        if self.latest_job is not None:
            latest = {
                "job_id": self.latest_job.job_id,
                "status": self.latest_job.status.value,
                "created_at": self.latest_job.created_at.isoformat(),
                "completed_at": (
                    self.latest_job.completed_at.isoformat()
                    if self.latest_job.completed_at
                    else None
                ),
            }
        return {
            "consecutive_failures": self.consecutive_failures,
            "consecutive_no_items": self.consecutive_no_items,
            "latest_job": latest,
        }


def leading_run(statuses: Sequence[JobStatus], status: JobStatus) -> int:
    """Length of the run of ``status`` at the start of ``statuses``."""
    count = 0
    for current in statuses:
        if current != status:
            break
        count += 1
    return count


class HealthMonitor:
    """Computes per-flow health and the problem-flow report."""

    def __init__(self, flows: FlowRepository, jobs: JobRepository):
        self.flows = flows
        self.jobs = jobs

    async def get_flow_health(self, flow_id: int) -> FlowHealth:
        """Health snapshot of one flow.

        Job history is read newest first in pages until both runs are broken.
        Pending and processing jobs are ignored by the scan.
        """
        health = FlowHealth()
        failures_open = no_items_open = True
        offset = 0

        while failures_open or no_items_open:
            page = await self.jobs.list_jobs(
                flow_id=flow_id, offset=offset, limit=HISTORY_PAGE_SIZE
            )
            if not page:
                break
            if health.latest_job is None:
                health.latest_job = page[0]

            # jobs still running neither extend nor break a run
            statuses = [job.status for job in page if job.status.is_terminal]
            if failures_open:
                run = leading_run(statuses, JobStatus.failed)
                health.consecutive_failures += run
                failures_open = run == len(statuses)
            if no_items_open:
                run = leading_run(statuses, JobStatus.completed_no_items)
                health.consecutive_no_items += run
                no_items_open = run == len(statuses)

            if len(page) < HISTORY_PAGE_SIZE:
                break
            offset += HISTORY_PAGE_SIZE

        return health

    async def get_problem_flows(self, threshold: int | None = None) -> dict[str, Any]:
        """Flows whose failure or no-item runs reached ``threshold``.

        Args:
            threshold: Minimum run length; missing or non-positive values use
                ``settings.problem_flow_threshold``

        Returns:
            ``failing`` and ``idle`` lists plus the effective ``threshold``
        """
        if threshold is None or threshold <= 0:
            threshold = settings.problem_flow_threshold

        failing: list[dict[str, Any]] = []
        idle: list[dict[str, Any]] = []

        for flow in await self.flows.list_all_ordered():
            health = await self.get_flow_health(flow.flow_id)  # type: ignore[arg-type]
            if health.consecutive_failures >= threshold:
                failing.append(self._failing_entry(flow, health.consecutive_failures))
            if health.consecutive_no_items >= threshold:
                idle.append(self._idle_entry(flow, health.consecutive_no_items))

        return {"failing": failing, "idle": idle, "threshold": threshold}

    @staticmethod
    def _failing_entry(flow: Flow, count: int) -> dict[str, Any]:
        return {
            "flow_id": flow.flow_id,
            "flow_name": flow.flow_name,
            "pipeline_id": flow.pipeline_id,
            "consecutive_failures": count,
            "description": (
                f"{flow.flow_name} (Flow #{flow.flow_id}) - "
                f"{count} consecutive failures - investigate errors"
            ),
        }

    @staticmethod
    def _idle_entry(flow: Flow, count: int) -> dict[str, Any]:
        return {
            "flow_id": flow.flow_id,
            "flow_name": flow.flow_name,
            "pipeline_id": flow.pipeline_id,
            "consecutive_no_items": count,
            "description": (
                f"{flow.flow_name} (Flow #{flow.flow_id}) - "
                f"{count} runs with no new items - consider lowering interval"
            ),
        }

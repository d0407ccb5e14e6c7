"""Hand-off of a job step to the scheduling bridge."""

from datetime import datetime
from typing import Any

from flowmill.exceptions import SchedulingError
from flowmill.services.scheduling.bridge import EXECUTE_STEP, JOB_GROUP, SchedulingBridge
from flowmill.utils.logger import logger


async def schedule_next_step(
    bridge: SchedulingBridge,
    job_id: int,
    flow_step_id: str,
    args: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> int:
    """Ask the bridge to run ``flow_step_id`` of ``job_id`` at ``timestamp`` (or now).

    Args:
        bridge: Scheduling bridge
        job_id: Job the step belongs to
        flow_step_id: Step to run
        args: Extra arguments passed through to the step invocation
        timestamp: When to run; None means immediately

    Returns:
        Id of the scheduled action

    Raises:
        SchedulingError: If the bridge rejected the action
    """
    action_args: dict[str, Any] = {"job_id": job_id, "flow_step_id": flow_step_id}
    if args:
        action_args["args"] = args

    action_id = await bridge.schedule_single_action(timestamp, EXECUTE_STEP, action_args, JOB_GROUP)
    if not action_id:
        raise SchedulingError(f"Scheduling bridge rejected step '{flow_step_id}' of job {job_id}")

    logger.debug(f"[job={job_id} step={flow_step_id}] Step scheduled (action={action_id})")
    return action_id

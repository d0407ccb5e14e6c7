"""
Scheduling bridge and its taskiq-backed dispatch.

Only the bridge contract is exported here; the broker, dispatcher, tasks and
worker modules are imported explicitly by the processes that run them.
"""

from .bridge import (
    EXECUTE_STEP,
    FLOW_GROUP,
    JOB_GROUP,
    RUN_FLOW_NOW,
    ActionScheduler,
    SchedulingBridge,
)

__all__ = [
    "EXECUTE_STEP",
    "FLOW_GROUP",
    "JOB_GROUP",
    "RUN_FLOW_NOW",
    "ActionScheduler",
    "SchedulingBridge",
]

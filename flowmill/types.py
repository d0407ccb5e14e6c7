"""Common type definitions for Flowmill.

Type aliases for the JSON-shaped maps stored on pipelines, flows and jobs.
"""

from typing import Any, TypeAlias

JSONDict: TypeAlias = dict[str, Any]

# Config maps as stored (opaque to the data store)
PipelineConfigMap: TypeAlias = dict[str, dict[str, Any]]
FlowConfigMap: TypeAlias = dict[str, dict[str, Any]]
SchedulingConfig: TypeAlias = dict[str, Any]
HandlerConfig: TypeAlias = dict[str, Any]
FieldMap: TypeAlias = dict[str, str]

# Scheduling bridge arguments
ActionArgs: TypeAlias = dict[str, Any]

# Result shape returned by every public operation
OperationResult: TypeAlias = dict[str, Any]

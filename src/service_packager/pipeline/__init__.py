from .config import OrchestratorConfig
from .context import RunContext
from .events import EventSink, EventType, make_event
from .graph import DependencyGraph, build_graph
from .report import PackageOutcome, RunReport, build_run_report
from .state import IllegalTransition, NodeStateTable
from .types import ActionResult, BuildArtifact, Event, NodeStatus

# The orchestrator imports the actions package, which imports this package;
# import it as service_packager.pipeline.orchestrator.

__all__ = [
    "ActionResult",
    "BuildArtifact",
    "DependencyGraph",
    "Event",
    "EventSink",
    "EventType",
    "IllegalTransition",
    "NodeStateTable",
    "NodeStatus",
    "OrchestratorConfig",
    "PackageOutcome",
    "RunContext",
    "RunReport",
    "build_graph",
    "build_run_report",
    "make_event",
]

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path

from service_packager.core import ActionCancelled, BuildLayout, ILogger

from .config import OrchestratorConfig
from .events import EventSink, EventType, make_event


@dataclass(slots=True)
class RunContext:
    """
    Context shared by every action of a single run. Read-only for workers
    apart from the cancel event and the (thread-safe) event sink.
    """

    run_id: str
    layout: BuildLayout
    config: OrchestratorConfig
    logger: ILogger
    events: EventSink
    # directory relative source paths and build commands run from
    base_dir: Path = field(default_factory=Path.cwd)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def package_logger(self, package: str) -> ILogger:
        return self.logger.bind(package=package)

    def emit(self, event: EventType | str, *, package: str | None = None, **kw: object) -> None:
        # Keep event chatter at debug level to leave console logs readable.
        ev = make_event(event_type=event, run_id=self.run_id, package=package, **kw)
        self.events.emit(ev)
        self.logger.debug(ev.type, package=package, **kw)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self, package: str) -> None:
        """Safe checkpoint for in-flight actions."""
        if self.cancel_event.is_set():
            raise ActionCancelled(package, "run cancelled")

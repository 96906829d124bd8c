from __future__ import annotations

import json
import os
import socket
import threading
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from service_packager.core import utc_now_iso

from .types import Event


class EventType(str, Enum):
    RUN_ENV = "run.env"
    RUN_START = "run.start"
    RUN_PLAN = "run.plan"
    RUN_CANCELLED = "run.cancelled"
    RUN_FINISH = "run.finish"

    PACKAGE_START = "package.start"
    PACKAGE_SUCCESS = "package.success"
    PACKAGE_FAILED = "package.failed"
    PACKAGE_SKIPPED = "package.skipped"

    FETCH_START = "fetch.start"
    FETCH_RETRY = "fetch.retry"
    FETCH_VERIFIED = "fetch.verified"

    BUILD_COMMAND = "build.command"
    BUILD_FINISH = "build.finish"

    ASSEMBLE_FINISH = "assemble.finish"
    SERVICE_MANIFEST_WRITTEN = "service_manifest.written"

    ARCHIVE_WRITTEN = "archive.written"
    ARCHIVE_REUSED = "archive.reused"
    ARCHIVE_FAILED = "archive.failed"


class EventSink:
    """
    Append-only JSONL event log; safe to call from worker threads.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        self.emit(
            Event(
                type=EventType.RUN_ENV.value,
                ts_utc=utc_now_iso(),
                run_id="__init__",
                data={
                    "hostname": socket.gethostname(),
                    "pid": os.getpid(),
                    "cwd": str(Path.cwd()),
                },
            )
        )

    def emit(self, event: Event) -> None:
        line = json.dumps(asdict(event), ensure_ascii=False, default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")

    def close(self) -> None:
        return


def make_event(
    *,
    event_type: EventType | str,
    run_id: str,
    package: Optional[str] = None,
    **data: Any,
) -> Event:
    type_value = (
        event_type.value if isinstance(event_type, EventType) else str(event_type)
    )
    return Event(
        type=type_value,
        ts_utc=utc_now_iso(),
        run_id=run_id,
        package=package,
        data=dict(data),
    )

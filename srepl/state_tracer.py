"""
Cycle tracer for srepl.

Logs every state transition of every synchronization cycle in a structured
format:

    [TIME] TRANSITION | path | BEFORE → AFTER

Usage:
    python -m srepl --trace-states
    SREPL_TRACE_STATES=1 python -m srepl

Logs to /tmp/srepl_state_trace.log
"""

import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

TRACE_ENV = 'SREPL_TRACE_STATES'


class CycleState(Enum):
    """States of one synchronization cycle."""
    IDLE = "IDLE"
    RESOLVING = "RESOLVING"
    EXECUTING = "EXECUTING"
    READING_LOG = "READING_LOG"
    MAPPING = "MAPPING"
    REWRITING = "REWRITING"
    PERSISTING = "PERSISTING"


@dataclass
class TraceEvent:
    """A single trace event."""
    event_id: int
    event_type: str  # SESSION, TRANSITION, ROLLBACK, ERROR
    source: str      # path the event concerns, or 'session'
    description: str
    before_state: Optional[str] = None
    after_state: Optional[str] = None
    details: dict = field(default_factory=dict)


class CycleTracer:
    """
    Traces the state transitions of synchronization cycles.

    Logs:
    - Session start and stop
    - Every cycle transition, including short-circuit exits back to IDLE
    - Rollback of touched files
    """

    LOG_FILE = Path("/tmp/srepl_state_trace.log")

    def __init__(self, enabled: bool = False, log_file: Optional[Path] = None):
        self._enabled = enabled
        self._event_id = 0
        self._events: list[TraceEvent] = []
        self._start_time = time.time()
        if log_file is not None:
            self.LOG_FILE = Path(log_file)

        if enabled:
            # Clear and start fresh log
            self.LOG_FILE.write_text("")
            self._log_header()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def events(self) -> list[TraceEvent]:
        return list(self._events)

    def _log_header(self):
        """Write header to log file."""
        header = f"""
================================================================================
srepl Cycle Trace Log
Started: {datetime.now().isoformat()}
================================================================================
Format: [TIME] EVENT_TYPE | SOURCE | DESCRIPTION
        State: BEFORE → AFTER
        Details: {{key: value}}
================================================================================

"""
        with open(self.LOG_FILE, "a") as f:
            f.write(header)

    def _elapsed(self) -> str:
        """Return elapsed time since start."""
        elapsed = time.time() - self._start_time
        return f"{elapsed:8.3f}s"

    def _write_event(self, event: TraceEvent):
        """Write event to log file."""
        if not self._enabled:
            return

        self._events.append(event)

        lines = [
            f"[{self._elapsed()}] {event.event_type:12} | {event.source} | {event.description}"
        ]

        if event.before_state or event.after_state:
            lines.append(f"             State: {event.before_state or '?'} → {event.after_state or '?'}")

        if event.details:
            details_str = ", ".join(f"{k}={v}" for k, v in event.details.items())
            lines.append(f"             Details: {{{details_str}}}")

        lines.append("")

        with open(self.LOG_FILE, "a") as f:
            f.write("\n".join(lines) + "\n")

    def _next_id(self) -> int:
        self._event_id += 1
        return self._event_id

    def trace_session_started(self, root: str):
        self._write_event(TraceEvent(
            event_id=self._next_id(),
            event_type="SESSION",
            source="session",
            description=f"Watching {root}",
            after_state=CycleState.IDLE.value,
        ))

    def trace_session_stopped(self, reason: str):
        self._write_event(TraceEvent(
            event_id=self._next_id(),
            event_type="SESSION",
            source="session",
            description=f"Stopped: {reason}",
        ))

    def trace_transition(
        self,
        path: str,
        before: CycleState,
        after: CycleState,
        reason: Optional[str] = None,
    ):
        """A cycle moved from one state to another."""
        self._write_event(TraceEvent(
            event_id=self._next_id(),
            event_type="TRANSITION",
            source=path,
            description=reason or f"{before.value} done",
            before_state=before.value,
            after_state=after.value,
        ))

    def trace_rollback(self, paths: Iterable[str]):
        restored = list(paths)
        self._write_event(TraceEvent(
            event_id=self._next_id(),
            event_type="ROLLBACK",
            source="session",
            description=f"Restored {len(restored)} file(s)",
            details={"files": ", ".join(restored)} if restored else {},
        ))

    def trace_error(self, path: str, error: str):
        self._write_event(TraceEvent(
            event_id=self._next_id(),
            event_type="ERROR",
            source=path,
            description=f"Error: {error}",
        ))

    def get_summary(self) -> str:
        """Get summary of all events."""
        if not self._events:
            return "No events recorded"

        transitions = [e for e in self._events if e.event_type == 'TRANSITION']
        lines = [
            f"Total events: {len(self._events)}",
            f"Transitions: {len(transitions)}",
            f"Writes: {sum(1 for e in transitions if e.before_state == CycleState.PERSISTING.value)}",
            f"Errors: {sum(1 for e in self._events if e.event_type == 'ERROR')}",
        ]
        return "\n".join(lines)


def tracing_requested() -> bool:
    """True when the environment asks for cycle tracing."""
    return os.environ.get(TRACE_ENV, '').strip().lower() in ('1', 'true', 'yes', 'on')


# Global tracer instance
_tracer: Optional[CycleTracer] = None


def get_tracer() -> CycleTracer:
    """Get the global cycle tracer."""
    global _tracer
    if _tracer is None:
        _tracer = CycleTracer(enabled=False)
    return _tracer


def init_tracer(enabled: bool = False, log_file: Optional[Path] = None) -> CycleTracer:
    """Initialize the global cycle tracer."""
    global _tracer
    _tracer = CycleTracer(enabled=enabled, log_file=log_file)
    return _tracer

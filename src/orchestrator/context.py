"""Per-run execution state."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Optional
from dataclasses import dataclass, field

import structlog

from core.blueprint import Blueprint
from core.errors import RunCancelledError

logger = structlog.get_logger()


STEP_RUNNING = "running"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CancellationToken:
    """Cooperative cancellation signal for one run."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Run cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self, run_id: Optional[str] = None) -> None:
        if self._event.is_set():
            raise RunCancelledError(self.reason or "Run cancelled", run_id=run_id)

    async def sleep(self, seconds: float, run_id: Optional[str] = None) -> None:
        """Sleep for seconds, waking early with RunCancelledError on cancel."""
        self.raise_if_cancelled(run_id)
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return
        raise RunCancelledError(self.reason or "Run cancelled", run_id=run_id)


@dataclass
class LogEntry:
    """One append-only step log record."""
    step: str
    status: str
    timestamp: str
    message: Optional[str] = None
    error: Optional[str] = None
    output: Any = None

    def to_dict(self) -> dict[str, Any]:
        entry = {"step": self.step, "status": self.status, "timestamp": self.timestamp}
        if self.message is not None:
            entry["message"] = self.message
        if self.error is not None:
            entry["error"] = self.error
        if self.output is not None:
            entry["output"] = self.output
        return entry


@dataclass
class ExecutionContext:
    """Mutable state threaded through one run."""
    run_id: str
    user_id: Optional[str] = None
    automation_id: Optional[str] = None
    variables: dict[str, Any] = field(default_factory=dict)
    credentials: dict[str, dict[str, Any]] = field(default_factory=dict)
    step_index: int = 0
    total_steps: int = 0
    logs: list[LogEntry] = field(default_factory=list)
    started_at: str = field(default_factory=_now_iso)
    start_monotonic: float = field(default_factory=time.monotonic)
    cancellation: CancellationToken = field(default_factory=CancellationToken)

    @classmethod
    def for_blueprint(
        cls,
        blueprint: Blueprint,
        run_id: str,
        user_id: Optional[str] = None,
        automation_id: Optional[str] = None,
        trigger_data: Optional[dict[str, Any]] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> "ExecutionContext":
        """Fresh context seeded with the blueprint's variables and trigger data."""
        variables = dict(blueprint.variables)
        if trigger_data:
            variables.update(trigger_data)
            variables["trigger_data"] = trigger_data
        return cls(
            run_id=run_id,
            user_id=user_id,
            automation_id=automation_id,
            variables=variables,
            total_steps=len(blueprint.steps),
            cancellation=cancellation or CancellationToken(),
        )

    def log_step(
        self,
        step_id: str,
        status: str,
        message: Optional[str] = None,
        error: Optional[str] = None,
        output: Any = None,
    ) -> LogEntry:
        entry = LogEntry(
            step=step_id,
            status=status,
            timestamp=_now_iso(),
            message=message,
            error=error,
            output=output,
        )
        self.logs.append(entry)

        log = logger.warning if status == STEP_FAILED else logger.debug
        log(
            "step_log",
            run_id=self.run_id,
            automation_id=self.automation_id,
            step_id=step_id,
            status=status,
            message=message,
            error=error,
        )
        return entry

    def raise_if_cancelled(self) -> None:
        self.cancellation.raise_if_cancelled(self.run_id)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.start_monotonic) * 1000)

    def progress_snapshot(self) -> dict[str, Any]:
        """Checkpoint written to the progress sink."""
        return {
            "started_at": self.started_at,
            "current_step": self.step_index + 1,
            "total_steps": self.total_steps,
            "steps": [entry.to_dict() for entry in self.logs],
            "variables": self.variables,
        }

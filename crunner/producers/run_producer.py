import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from crunner.bus import EventBus
from crunner.errors import APIError
from crunner.events import RunEvent
from crunner.sandbox.pipeline import RunResult
from crunner.sandbox.session import InteractiveSession

_logger = logging.getLogger("crunner.events")


def build_run_event(result: RunResult, code_hash: str) -> RunEvent:
    return {
        "type": "run_finished",
        "id": result.run_id,
        "mode": "batch",
        "outcome": result.outcome,
        "exit_code": result.exit_code,
        "timed_out": result.timed_out,
        "duration_ms": result.duration_ms,
        "code_hash": code_hash,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def build_failed_run_event(code_hash: str, error: APIError, duration_ms: int) -> RunEvent:
    """Event for a batch run that the service could not complete."""
    return {
        "type": "run_failed",
        "id": uuid.uuid4().hex,
        "mode": "batch",
        "outcome": error.error,
        "exit_code": None,
        "timed_out": False,
        "duration_ms": duration_ms,
        "code_hash": code_hash,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def build_session_event(session: InteractiveSession) -> RunEvent:
    return {
        "type": "session_closed",
        "id": session.id,
        "mode": "interactive",
        "outcome": session.outcome,
        "exit_code": session.exit_code,
        "timed_out": session.timed_out,
        "duration_ms": int((time.monotonic() - session.started_at) * 1000),
        "code_hash": session.code_hash,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def publish_run_event(event_bus: Optional[EventBus], event: RunEvent) -> None:
    if event_bus is None:
        return
    try:
        await event_bus.publish(event)
    except Exception as e:
        # Don't fail a run because the bus is down
        _logger.warning("events.publish failed id=%s err=%r", event["id"], e)

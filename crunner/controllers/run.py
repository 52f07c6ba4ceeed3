import asyncio
import logging
import time

from fastapi import APIRouter, Request

from crunner.dependencies import OptionalBus, Runner
from crunner.errors import APIError, InvalidInputError
from crunner.models.run import RunRequest, RunResponse
from crunner.producers.run_producer import build_failed_run_event, build_run_event, publish_run_event
from crunner.sandbox.pipeline import code_hash

router = APIRouter(prefix="/api", tags=["run"])

_logger = logging.getLogger("crunner.api.run")

DISCONNECT_POLL_SEC = 0.5


async def _cancel_on_disconnect(request: Request, task: asyncio.Task) -> None:
    while not task.done():
        if await request.is_disconnected():
            _logger.info("run.client_disconnected path=%s", request.url.path)
            task.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_SEC)


@router.post("/run", response_model=RunResponse)
async def run_code(body: RunRequest, request: Request, runner: Runner, event_bus: OptionalBus) -> RunResponse:
    execution = body.to_execution_request()
    source_hash = code_hash(execution.source_code)
    start = time.monotonic()
    task = asyncio.create_task(runner.run(execution))
    watcher = asyncio.create_task(_cancel_on_disconnect(request, task))
    try:
        result = await task
    except InvalidInputError:
        # Rejected before a run existed
        raise
    except APIError as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        await publish_run_event(event_bus, build_failed_run_event(source_hash, e, duration_ms))
        raise
    finally:
        watcher.cancel()

    await publish_run_event(event_bus, build_run_event(result, source_hash))
    return RunResponse.from_result(result)

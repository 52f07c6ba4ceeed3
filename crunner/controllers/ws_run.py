import asyncio
import contextlib
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from crunner import state
from crunner.config import get_settings
from crunner.errors import APIError, ServiceUnavailableError, SessionProtocolError
from crunner.models.interactive import ErrorMessage, ServerMessage, parse_client_message
from crunner.producers.run_producer import build_session_event, publish_run_event
from crunner.sandbox import InteractiveSession

router = APIRouter()

_logger = logging.getLogger("crunner.ws.run")


async def _forward_client_messages(websocket: WebSocket, session: InteractiveSession, send) -> None:
    """Feed inbound frames to the session until the client goes away."""
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = parse_client_message(raw)
            except ValidationError:
                await send(ErrorMessage(detail="Malformed message"))
                continue
            try:
                await session.handle(message)
            except SessionProtocolError as e:
                await send(ErrorMessage(detail=e.detail))
            except APIError as e:
                _logger.info("ws_run.reject id=%s err=%s", session.id, e.detail)
                await send(ErrorMessage(detail=e.detail))
                return
            except Exception:
                _logger.exception("ws_run.handle failed id=%s", session.id)
                await send(ErrorMessage(detail="Internal error"))
                return
    except WebSocketDisconnect:
        _logger.info("ws_run.disconnect id=%s state=%s", session.id, session.state.value)


@router.websocket("/ws/run")
async def websocket_run(websocket: WebSocket):
    await websocket.accept()

    if state.runner is None:
        await websocket.send_text(ErrorMessage(detail=ServiceUnavailableError.detail).to_json())
        await websocket.close(code=1011)
        return

    async def send(message: ServerMessage) -> None:
        if websocket.application_state is not WebSocketState.CONNECTED:
            return
        try:
            await websocket.send_text(message.to_json())
        except (WebSocketDisconnect, RuntimeError, OSError):
            # Client already gone; the reader task notices the disconnect
            pass

    settings = get_settings()
    session = InteractiveSession(
        state.runner.sandbox,
        state.runner.workspaces,
        state.runner.limits,
        settings.interactive,
        send,
    )
    async with state.sessions_lock:
        state.active_sessions[session.id] = session
    _logger.info("ws_run.accept id=%s client=%s", session.id, websocket.client.host if websocket.client else "-")

    reader = asyncio.create_task(_forward_client_messages(websocket, session, send))
    finished = asyncio.create_task(session.wait_closed())
    try:
        await asyncio.wait({reader, finished}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        reader.cancel()
        finished.cancel()
        await session.close()
        async with state.sessions_lock:
            state.active_sessions.pop(session.id, None)
        if websocket.application_state is WebSocketState.CONNECTED:
            with contextlib.suppress(RuntimeError):
                await websocket.close()
        await publish_run_event(state.event_bus, build_session_event(session))

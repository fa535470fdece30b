import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from pydantic import ValidationError

from ..errors import ProtocolError, StoryloomError
from ..models import Ack, Envelope, Side, ToolInvocationModel
from ..sessions import SessionConnection, SessionManager
from ..sessions.store import AppliedPatch

logger = logging.getLogger("storyloom.bindings")

_POLICY_VIOLATION = 1008
_GOING_AWAY = 1001


def _ack_body(result: Any) -> dict[str, Any]:
    if isinstance(result, AppliedPatch):
        return {"version": result.new_version}
    if isinstance(result, bool):
        return {"accepted": result}
    if isinstance(result, str):
        return {"invocation_id": result}
    if isinstance(result, int):
        return {"version": result}
    return {}


async def _handle_frame(connection: SessionConnection, raw: Any) -> None:
    seq = raw.get("seq") if isinstance(raw, dict) and isinstance(raw.get("seq"), int) else None
    if not isinstance(raw, dict):
        connection.push_error(ProtocolError("Frames must be JSON objects"), in_reply_to=seq)
        return
    frame = {**raw, "session_id": connection.session_id, "sender": connection.side.value}
    try:
        envelope = Envelope.model_validate(frame)
    except ValidationError as exc:
        error = exc.errors()[0]
        location = ".".join(str(part) for part in error["loc"])
        connection.push_error(ProtocolError(f"{location}: {error['msg']}"), in_reply_to=seq)
        return

    try:
        result = await connection.forward(envelope)
    except StoryloomError as exc:
        logger.debug(
            "frame_rejected",
            extra={"session_id": connection.session_id, "seq": envelope.seq, "code": exc.code},
        )
        connection.push_error(exc, in_reply_to=envelope.seq)
        return
    if result is None:
        # Already seen; tell clients that reconnected under an old client_id where to resume.
        body = {"next_seq": connection.expected_seq()}
    else:
        body = _ack_body(result)
    connection.reply(Ack(in_reply_to=envelope.seq, duplicate=result is None, result=body))


def create_sync_app(manager: SessionManager, *, include_docs: bool = True):
    try:
        from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
        from fastapi.responses import JSONResponse, Response
    except ModuleNotFoundError as exc:  # pragma: no cover - optional extra
        raise RuntimeError("FastAPI is required for the sync server. Install storyloom[server].") from exc

    docs_url = "/docs" if include_docs else None
    openapi_url = "/openapi.json" if include_docs else None

    @asynccontextmanager
    async def _lifespan(_app: FastAPI):
        try:
            yield
        finally:
            await manager.close_all()

    app = FastAPI(
        title="storyloom",
        description="Shared-state sync and tool approval engine",
        docs_url=docs_url,
        openapi_url=openapi_url,
        lifespan=_lifespan,
    )

    @app.exception_handler(StoryloomError)
    async def _handle_storyloom_error(_request: Request, exc: StoryloomError):
        details = exc.to_problem_details().model_dump(exclude_none=True)
        return JSONResponse(
            status_code=exc.status_code,
            content=details,
            media_type="application/problem+json",
        )

    router = APIRouter()

    @router.get("/tools")
    async def list_tools() -> dict[str, Any]:
        return {"tools": manager.tools.records()}

    @router.get("/sessions/{session_id}/state")
    async def get_state(session_id: str) -> dict[str, Any]:
        session = await manager.require(session_id)
        return session.store.snapshot().redacted().model_dump(mode="json")

    @router.get("/sessions/{session_id}/invocations")
    async def list_invocations(session_id: str) -> dict[str, Any]:
        session = await manager.require(session_id)
        items = [
            ToolInvocationModel.from_invocation(item).model_dump(mode="json")
            for item in session.invocations.list_invocations()
        ]
        return {"invocations": items}

    @router.delete("/sessions/{session_id}", status_code=204)
    async def close_session(session_id: str) -> Response:
        await manager.require(session_id)
        await manager.drop(session_id)
        return Response(status_code=204)

    @router.websocket("/sessions/{session_id}/ws")
    async def sync_socket(
        websocket: WebSocket,
        session_id: str,
        side: str = "ui",
        last_version: int | None = None,
        client_id: str | None = None,
    ) -> None:
        if side not in {Side.AGENT.value, Side.UI.value}:
            await websocket.close(code=_POLICY_VIOLATION, reason="side must be 'agent' or 'ui'")
            return
        await websocket.accept()
        session = await manager.get_or_create(session_id)
        try:
            connection = await session.connect(side, client_id=client_id, last_version=last_version)
        except StoryloomError as exc:
            await websocket.close(code=_GOING_AWAY, reason=exc.title)
            return

        async def _pump() -> None:
            async for envelope in connection.messages():
                await websocket.send_json(envelope.model_dump(mode="json"))
            await websocket.close(code=_GOING_AWAY)

        writer = asyncio.create_task(_pump())
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    raw = json.loads(text)
                except json.JSONDecodeError:
                    connection.push_error(ProtocolError("Frames must be valid JSON"))
                    continue
                await _handle_frame(connection, raw)
        except WebSocketDisconnect:
            pass
        finally:
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)
            await connection.close()

    app.include_router(router)
    return app


__all__ = ["create_sync_app"]

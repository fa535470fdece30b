from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from conftest import FakeBackend, fast_config
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from storyloom.bindings import create_sync_app
from storyloom.sessions import SessionManager


def _client(backend: FakeBackend | None = None) -> tuple[SessionManager, TestClient]:
    manager = SessionManager(backend=backend or FakeBackend(), config=fast_config())
    return manager, TestClient(create_sync_app(manager), raise_server_exceptions=False)


def _read_until(ws, predicate: Callable[[dict[str, Any]], bool], *, limit: int = 50) -> list[dict[str, Any]]:
    frames = []
    for _ in range(limit):
        frame = ws.receive_json()
        frames.append(frame)
        if predicate(frame):
            return frames
    raise AssertionError(f"no matching frame in {frames}")


def _kind(name: str) -> Callable[[dict[str, Any]], bool]:
    return lambda frame: frame["payload"]["kind"] == name


def _patch_frame(seq: int, base_version: int, path: str, value: Any) -> dict[str, Any]:
    return {
        "seq": seq,
        "payload": {"kind": "state_patch", "base_version": base_version, "ops": [{"path": path, "value": value}]},
    }


def test_tools_endpoint_lists_registry() -> None:
    _, client = _client()
    with client:
        response = client.get("/tools")

    assert response.status_code == 200
    names = [item["name"] for item in response.json()["tools"]]
    assert names == ["create_character", "create_background", "create_scene", "edit_artifact"]


def test_unknown_session_is_problem_json() -> None:
    _, client = _client()
    with client:
        response = client.get("/sessions/missing/state")
        delete = client.delete("/sessions/missing")

    assert response.status_code == 404
    assert response.headers["content-type"].startswith("application/problem+json")
    body = response.json()
    assert body["code"] == "session-not-found"
    assert body["session_id"] == "missing"
    assert delete.status_code == 404


def test_socket_patch_is_broadcast_and_acknowledged() -> None:
    _, client = _client()
    with client:
        with client.websocket_connect("/sessions/s1/ws?side=ui") as ws:
            snapshot = ws.receive_json()
            assert snapshot["sender"] == "engine"
            assert snapshot["payload"]["kind"] == "state_snapshot"
            assert snapshot["payload"]["state"]["version"] == 0

            ws.send_json(_patch_frame(0, 0, "values.title", "Fox Tales"))
            frames = _read_until(ws, _kind("ack"))

            assert [frame["payload"]["kind"] for frame in frames] == ["state_patch", "ack"]
            assert frames[0]["payload"]["version"] == 1
            assert frames[1]["payload"] == {"kind": "ack", "in_reply_to": 0, "duplicate": False, "result": {"version": 1}}

            # A retransmitted frame is acknowledged but not applied twice.
            ws.send_json(_patch_frame(0, 0, "values.title", "Fox Tales"))
            (ack,) = _read_until(ws, _kind("ack"))
            assert ack["payload"]["duplicate"] is True

        state = client.get("/sessions/s1/state").json()

    assert state["version"] == 1
    assert state["values"] == {"title": "Fox Tales"}


def test_duplicate_ack_tells_reconnected_client_where_to_resume() -> None:
    _, client = _client()
    with client:
        with client.websocket_connect("/sessions/s1/ws?side=ui&client_id=tab-9") as ws:
            ws.receive_json()
            ws.send_json(_patch_frame(0, 0, "values.title", "Fox Tales"))
            _read_until(ws, _kind("ack"))

        with client.websocket_connect("/sessions/s1/ws?side=ui&client_id=tab-9") as ws:
            ws.receive_json()
            ws.send_json(_patch_frame(0, 1, "values.title", "Owl Tales"))
            (ack,) = _read_until(ws, _kind("ack"))
            assert ack["payload"]["duplicate"] is True
            assert ack["payload"]["result"] == {"next_seq": 1}

            ws.send_json(_patch_frame(1, 1, "values.title", "Owl Tales"))
            frames = _read_until(ws, _kind("ack"))
            assert frames[-1]["payload"]["result"] == {"version": 2}

        state = client.get("/sessions/s1/state").json()

    assert state["values"] == {"title": "Owl Tales"}


def test_bad_frames_get_error_replies() -> None:
    _, client = _client()
    with client:
        with client.websocket_connect("/sessions/s1/ws?side=ui") as ws:
            ws.receive_json()

            ws.send_text("not json")
            error = ws.receive_json()["payload"]
            assert error["kind"] == "error"
            assert error["error"]["code"] == "protocol-error"

            ws.send_json([1, 2])
            assert ws.receive_json()["payload"]["error"]["detail"] == "Frames must be JSON objects"

            ws.send_json({"payload": {"kind": "snapshot_request"}})
            assert ws.receive_json()["payload"]["error"]["detail"] == "seq: Field required"

            ws.send_json({"seq": 4, "payload": {"kind": "state_snapshot", "state": {}}})
            error = ws.receive_json()["payload"]
            assert error["in_reply_to"] == 4
            assert "only sent by the engine" in error["error"]["detail"]

            ws.send_json(_patch_frame(5, 3, "values.title", "stale"))
            frames = _read_until(ws, _kind("error"))
            assert frames[0]["payload"]["kind"] == "state_snapshot"
            assert frames[-1]["payload"]["error"]["code"] == "conflict"


def test_unknown_side_is_refused() -> None:
    _, client = _client()
    with client:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/sessions/s1/ws?side=engine") as ws:
                ws.receive_json()

    assert excinfo.value.code == 1008


def test_gated_invocation_over_sockets() -> None:
    backend = FakeBackend(["https://cdn.test/ari.png"])
    _, client = _client(backend)
    with client:
        with client.websocket_connect("/sessions/s1/ws?side=ui&client_id=tab-1") as ui:
            ui.receive_json()
            ui.send_json(_patch_frame(0, 0, "credential", "sk-live"))
            _read_until(ui, _kind("ack"))

            with client.websocket_connect("/sessions/s1/ws?side=agent") as agent:
                snapshot = agent.receive_json()
                assert snapshot["payload"]["state"]["credential"] == "***"

                agent.send_json(
                    {
                        "seq": 0,
                        "payload": {
                            "kind": "invocation_request",
                            "tool_name": "create_character",
                            "args": {"name": "Ari", "prompt": "a fox scout"},
                        },
                    }
                )
                (ack,) = _read_until(agent, _kind("ack"))[-1:]
                invocation_id = ack["payload"]["result"]["invocation_id"]

                request = _read_until(ui, _kind("approval_request"))[-1]["payload"]
                assert request["invocation_id"] == invocation_id
                assert request["args"]["name"] == "Ari"

                ui.send_json(
                    {
                        "seq": 1,
                        "payload": {"kind": "approval_decision", "invocation_id": invocation_id, "decision": "approve"},
                    }
                )
                decision_ack = _read_until(ui, _kind("ack"))[-1]["payload"]
                assert decision_ack["result"] == {"accepted": True}

                terminal = _read_until(
                    agent,
                    lambda frame: frame["payload"]["kind"] == "invocation_event" and frame["payload"]["terminal"],
                )[-1]["payload"]
                assert terminal["status"] == "succeeded"
                assert terminal["result"]["artifact"]["media_ref"] == "https://cdn.test/ari.png"

        invocations = client.get("/sessions/s1/invocations").json()["invocations"]
        state = client.get("/sessions/s1/state").json()

    assert backend.calls[0][1] == "sk-live"
    assert [item["status"] for item in invocations] == ["succeeded"]
    assert state["credential"] == "***"
    assert state["characters"][0]["name"] == "Ari"


def test_delete_closes_the_session() -> None:
    manager, client = _client()
    with client:
        with client.websocket_connect("/sessions/s1/ws?side=agent") as ws:
            ws.receive_json()
        assert client.get("/sessions/s1/state").status_code == 200

        response = client.delete("/sessions/s1")

        assert response.status_code == 204
        assert client.get("/sessions/s1/state").status_code == 404
    assert len(manager) == 0

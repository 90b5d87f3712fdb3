import time

import pytest
from fastapi.testclient import TestClient

from conftest import ScriptedGateway
from dal.session_dal import SessionDAL
from main import create_app
from services.chat.attachments import AttachmentProcessor
from services.chat.prompts import SystemPromptLoader
from services.chat.session_registry import SessionRegistry
from utils.app_config import AppConfig
from utils.database_init import AsyncDatabaseInitializer


@pytest.fixture
def client(tmp_path):
    prompt_file = tmp_path / "system.txt"
    prompt_file.write_text("Be helpful.", encoding="utf-8")
    config = AppConfig(system_prompt_path=prompt_file)

    app = create_app(config, use_lifespan=False)
    app.state.session_registry = SessionRegistry(
        SessionDAL(AsyncDatabaseInitializer(tmp_path / "db")), ScriptedGateway(["Hi", " there"])
    )
    app.state.attachment_processor = AttachmentProcessor()
    app.state.prompt_loader = SystemPromptLoader(prompt_file)
    with TestClient(app) as test_client:
        yield test_client


def _wait_for_reply(client, session_id, expected, attempts=100):
    for _ in range(attempts):
        body = client.get(f"/sessions/{session_id}").json()
        if not body["generating"] and body["messages"] and body["messages"][-1]["text"] == expected:
            return body
        time.sleep(0.01)
    raise AssertionError(f"reply {expected!r} never arrived: {body}")


def test_send_and_read_back(client):
    session_id = client.post("/sessions").json()["session_id"]

    resp = client.post(f"/sessions/{session_id}/messages", json={"text": "Hello?"})
    assert resp.status_code == 200
    assistant_id = resp.json()["assistant_message_id"]

    body = _wait_for_reply(client, session_id, "Hi there")
    assert [m["sender"] for m in body["messages"]] == ["user", "assistant"]
    assert body["messages"][1]["id"] == assistant_id


def test_empty_prompt_is_rejected(client):
    session_id = client.post("/sessions").json()["session_id"]

    resp = client.post(f"/sessions/{session_id}/messages", json={"text": "  "})

    assert resp.status_code == 400


def test_unknown_session_reads_as_empty(client):
    body = client.get("/sessions/nope").json()

    assert body["messages"] == []
    assert body["settings"] == {"reasoning_enabled": False, "web_search_mode": "auto"}


def test_delete_unknown_session_is_404(client):
    resp = client.delete("/sessions/nope")

    assert resp.status_code == 404
    assert resp.json()["detail"] == "Chat not found"


def test_regenerate_edit_and_delete_messages(client):
    session_id = client.post("/sessions").json()["session_id"]
    client.post(f"/sessions/{session_id}/messages", json={"text": "first"})
    body = _wait_for_reply(client, session_id, "Hi there")
    user_id, reply_id = [m["id"] for m in body["messages"]]

    assert client.post(f"/sessions/{session_id}/messages/{user_id}/regenerate").status_code == 400
    resp = client.post(f"/sessions/{session_id}/messages/{reply_id}/regenerate")
    assert resp.status_code == 200
    _wait_for_reply(client, session_id, "Hi there")

    resp = client.put(f"/sessions/{session_id}/messages/{user_id}", json={"text": "first, edited"})
    assert resp.status_code == 200
    body = _wait_for_reply(client, session_id, "Hi there")
    assert body["messages"][0]["text"] == "first, edited"

    assert client.delete(f"/sessions/{session_id}/messages/missing").status_code == 404
    resp = client.delete(f"/sessions/{session_id}/messages/{user_id}")
    assert resp.json()["initialized"] is False
    assert resp.json()["message_count"] == 0


def test_settings_update_and_validation(client):
    session_id = client.post("/sessions").json()["session_id"]

    resp = client.put(f"/sessions/{session_id}/settings", json={"reasoning_enabled": True, "web_search_mode": "off"})
    assert resp.json()["settings"] == {"reasoning_enabled": True, "web_search_mode": "off"}
    assert client.put(f"/sessions/{session_id}/settings", json={"web_search_mode": "loud"}).status_code == 400


def test_stop_without_generation(client):
    session_id = client.post("/sessions").json()["session_id"]

    assert client.post(f"/sessions/{session_id}/stop").json()["stopped"] is False


def test_list_and_clear_sessions(client):
    session_id = client.post("/sessions").json()["session_id"]
    client.post(f"/sessions/{session_id}/messages", json={"text": "Listed chat"})
    _wait_for_reply(client, session_id, "Hi there")

    for _ in range(100):
        listed = client.get("/sessions").json()
        if listed and listed[0]["title"] == "Listed chat":
            break
        time.sleep(0.01)
    assert listed[0]["id"] == session_id
    assert listed[0]["title"] == "Listed chat"

    assert client.delete("/sessions").json()["deleted_count"] == 1
    assert client.get("/sessions").json() == []


def test_system_prompt_route(client):
    assert client.get("/system-prompt").json() == {"system_prompt": "Be helpful."}


def test_websocket_turn(client):
    with client.websocket_connect("/ws/sessions/ws-chat") as ws:
        snapshot = ws.receive_json()
        assert snapshot["type"] == "session.snapshot"
        assert snapshot["messages"] == []

        ws.send_json({"type": "message.send", "text": "Hello", "request_id": "r1"})
        seen = []
        while True:
            frame = ws.receive_json()
            seen.append(frame)
            if frame["type"] == "render.final" and frame["nodes"][0]["children"][0]["text"] == "Hi there":
                break

        types = [frame["type"] for frame in seen]
        assert "message.send.ack" in types
        ack = next(frame for frame in seen if frame["type"] == "message.send.ack")
        assert ack["request_id"] == "r1"
        word_keys = [u["key"] for f in seen if f["type"] == "render.units" for u in f["units"] if u["key"]]
        assert word_keys == [f"{ack['assistant_message_id']}-word-0", f"{ack['assistant_message_id']}-word-2"]

        ws.send_json({"type": "message.edit", "message_id": "missing", "text": "x", "request_id": "r2"})
        while True:
            frame = ws.receive_json()
            if frame["type"] == "error":
                break
        assert frame["request_id"] == "r2"


def test_health_reports_missing_client(client):
    body = client.get("/health").json()

    assert body["ok"] is True
    assert body["openai_available"] is False


def test_lookups_on_unknown_sessions_create_nothing(client):
    registry = client.app.state.session_registry

    assert client.post("/sessions/ghost/stop").json()["stopped"] is False
    assert client.put("/sessions/ghost/messages/m1", json={"text": "x"}).status_code == 404
    assert client.post("/sessions/ghost/messages/m1/regenerate").status_code == 404
    assert client.delete("/sessions/ghost/messages/m1").status_code == 404
    assert registry.peek("ghost") is None


def test_deleting_a_session_closes_its_socket(client):
    with client.websocket_connect("/ws/sessions/doomed") as ws:
        assert ws.receive_json()["type"] == "session.snapshot"

        assert client.delete("/sessions/doomed").status_code == 200
        while True:
            frame = ws.receive_json()
            if frame["type"] == "session.deleted":
                break

    assert client.app.state.session_registry.peek("doomed") is None
    assert client.get("/sessions/doomed").json()["messages"] == []

import json
from pathlib import Path

from fastapi.testclient import TestClient

import tutorchat.main as tutorchat_main
from fakes import FakeBlobStore, FakeExtractor, FakeImageClient, ScriptedChatClient, make_persona
from tutorchat.services.attachments import AttachmentPipeline
from tutorchat.services.session import SessionController, TurnPhase
from tutorchat.services.storage import Storage
from tutorchat.services.visual_aid import VisualAidAdvisor


def _install(monkeypatch, tmp_path: Path, chat_client=None):
    tutorchat_main.session_controllers.clear()
    storage = Storage(base_dir=str(tmp_path / "data"))
    storage.save_persona(make_persona())
    chat_client = chat_client or ScriptedChatClient()

    def _build_controller(persona_id: str, user_id: str) -> SessionController:
        return SessionController(
            persona_id=persona_id,
            storage=storage,
            pipeline=AttachmentPipeline(FakeBlobStore(), FakeExtractor(), max_bytes=64),
            advisor=VisualAidAdvisor(FakeImageClient(), enabled=True, timeout=5),
            chat_client=chat_client,
            user_id=user_id,
        )

    monkeypatch.setattr(tutorchat_main, "storage", storage)
    monkeypatch.setattr(tutorchat_main, "_build_controller", _build_controller)
    return storage


def _events(body: str):
    return [
        json.loads(chunk[len("data: "):])
        for chunk in body.split("\n\n")
        if chunk.startswith("data: ")
    ]


def test_stream_endpoint_emits_turn_events(monkeypatch, tmp_path: Path):
    storage = _install(monkeypatch, tmp_path)
    client = TestClient(tutorchat_main.app)

    response = client.post(
        "/api/personas/tutor-1/messages/stream",
        json={"message": "What is 12 times 4?"},
        headers={"X-User-Id": "student-7"},
    )

    assert response.status_code == 200
    events = _events(response.text)
    assert events[0] == {"type": "start"}
    assert events[-1] == {"type": "complete", "phase": "idle"}
    types = [e["type"] for e in events]
    assert "visual_aid" not in types
    assert types.count("assistant_chunk") == 3
    complete = [e for e in events if e["type"] == "assistant_complete"][0]
    assert complete["entry"]["content"] == "Hello!"
    assert complete["chat_count"] == 1

    records = storage.list_messages("tutor-1")
    assert [r["role"] for r in records] == ["user", "assistant"]
    assert {r["user_id"] for r in records} == {"student-7"}

    transcript = client.get("/api/personas/tutor-1/messages").json()
    assert [m["role"] for m in transcript["messages"]] == ["user", "assistant"]
    assert transcript["phase"] == "idle"


def test_stream_endpoint_reports_completion_failure(monkeypatch, tmp_path: Path):
    _install(monkeypatch, tmp_path, chat_client=ScriptedChatClient(fail_after=1))
    client = TestClient(tutorchat_main.app)

    response = client.post("/api/personas/tutor-1/messages/stream", json={"message": "hi"})

    events = _events(response.text)
    [error] = [e for e in events if e["type"] == "error"]
    assert error["error_type"] == "completion_failed"
    transcript = client.get("/api/personas/tutor-1/messages").json()
    assert [m["role"] for m in transcript["messages"]] == ["user"]


def test_unknown_persona_returns_404(monkeypatch, tmp_path: Path):
    _install(monkeypatch, tmp_path)
    client = TestClient(tutorchat_main.app)

    assert client.get("/api/personas/nobody").status_code == 404
    assert client.get("/api/personas/nobody/messages").status_code == 404
    response = client.post("/api/personas/nobody/messages/stream", json={"message": "hi"})
    assert response.status_code == 404


def test_empty_message_is_rejected(monkeypatch, tmp_path: Path):
    _install(monkeypatch, tmp_path)
    client = TestClient(tutorchat_main.app)

    response = client.post("/api/personas/tutor-1/messages/stream", json={"message": "  "})

    assert response.status_code == 400


def test_busy_conversation_returns_409(monkeypatch, tmp_path: Path):
    _install(monkeypatch, tmp_path)
    client = TestClient(tutorchat_main.app)
    client.get("/api/personas/tutor-1/messages")
    tutorchat_main.session_controllers["tutor-1"].phase = TurnPhase.STREAMING

    assert client.post("/api/personas/tutor-1/messages/stream", json={"message": "hi"}).status_code == 409
    assert client.post("/api/personas/tutor-1/clear").status_code == 409


def test_upload_stages_accepted_files_and_reports_rejections(monkeypatch, tmp_path: Path):
    _install(monkeypatch, tmp_path)
    client = TestClient(tutorchat_main.app)

    response = client.post(
        "/api/personas/tutor-1/attachments",
        files=[
            ("files", ("notes.txt", b"2 + 2 = ?", "text/plain")),
            ("files", ("scan.png", b"x" * 65, "image/png")),
            ("files", ("song.mp3", b"id3", "audio/mpeg")),
        ],
    )

    assert response.status_code == 200
    body = response.json()
    assert [a["name"] for a in body["accepted"]] == ["notes.txt"]
    assert body["accepted"][0]["extracted_text"] == "page one"
    assert [(r["filename"], r["kind"]) for r in body["rejected"]] == [
        ("scan.png", "FileTooLarge"),
        ("song.mp3", "UnsupportedType"),
    ]
    assert len(body["staged"]) == 1

    removed = client.delete("/api/personas/tutor-1/attachments/staged/0")
    assert removed.status_code == 200
    assert removed.json()["staged"] == []
    assert client.delete("/api/personas/tutor-1/attachments/staged/0").status_code == 400


def test_attachment_records_are_listed_per_message(monkeypatch, tmp_path: Path):
    _install(monkeypatch, tmp_path)
    client = TestClient(tutorchat_main.app)
    client.post(
        "/api/personas/tutor-1/attachments",
        files=[("files", ("worksheet.pdf", b"%PDF-1.4", "application/pdf"))],
    )

    response = client.post("/api/personas/tutor-1/messages/stream", json={"message": "check this"})
    user_entry = [e for e in _events(response.text) if e["type"] == "user_entry"][0]["entry"]

    records = client.get(f"/api/messages/{user_entry['id']}/attachments").json()
    assert records["message_id"] == user_entry["id"]
    [record] = records["attachments"]
    assert record["kind"] == "document"
    assert record["name"] == "worksheet.pdf"
    assert record["extracted_text"] == "page one"


def test_clear_hides_transcript_but_keeps_storage(monkeypatch, tmp_path: Path):
    storage = _install(monkeypatch, tmp_path)
    client = TestClient(tutorchat_main.app)
    client.post("/api/personas/tutor-1/messages/stream", json={"message": "hello"})

    response = client.post("/api/personas/tutor-1/clear")

    assert response.status_code == 200
    assert response.json()["messages"] == []
    assert len(storage.list_messages("tutor-1")) == 2


def test_health():
    client = TestClient(tutorchat_main.app)
    assert client.get("/health").json() == {"status": "ok"}


def test_cleared_view_reloads_stored_history_on_next_open(monkeypatch, tmp_path: Path):
    _install(monkeypatch, tmp_path)
    client = TestClient(tutorchat_main.app)
    client.post("/api/personas/tutor-1/messages/stream", json={"message": "hello"})
    client.post(
        "/api/personas/tutor-1/attachments",
        files=[("files", ("notes.txt", b"x + 1 = 2", "text/plain"))],
    )

    cleared = client.post("/api/personas/tutor-1/clear").json()
    reopened = client.get("/api/personas/tutor-1/messages").json()

    assert cleared["messages"] == []
    assert [m["role"] for m in reopened["messages"]] == ["user", "assistant"]
    assert [a["name"] for a in reopened["staged_attachments"]] == ["notes.txt"]

import asyncio

import pytest

from fakes import FlakyStorage, make_persona
from tutorchat.models.schemas import Attachment, GeneratedImage, TranscriptEntry
from tutorchat.services.error_handling import PersistenceFailure
from tutorchat.services.persistence import (
    PersistenceCoordinator,
    deserialize_attachments,
    deserialize_generated_images,
    entry_to_record,
    record_to_entry,
    serialize_attachments,
    serialize_generated_images,
)


def _attachments():
    return [
        Attachment(kind="image", name="page.png", url="https://blobs.example/homework/1-page.png", size=10, content_type="image/png"),
        Attachment(kind="document", name="notes.pdf", url="https://blobs.example/homework/2-notes.pdf", size=20, extracted_text="x = 3"),
    ]


def _user_entry(**overrides):
    data = {
        "id": "msg_100",
        "role": "user",
        "content": "help with this",
        "timestamp": "2026-10-19T10:00:00+00:00",
        "attachments": _attachments(),
    }
    data.update(overrides)
    return TranscriptEntry(**data)


def _assistant_entry(**overrides):
    data = {
        "id": "msg_101",
        "role": "assistant",
        "content": "Sure!",
        "timestamp": "2026-10-19T10:00:05+00:00",
    }
    data.update(overrides)
    return TranscriptEntry(**data)


def _coordinator(tmp_path, fail_on=()):
    storage = FlakyStorage(base_dir=str(tmp_path / "data"), fail_on=fail_on)
    storage.save_persona(make_persona())
    return PersistenceCoordinator(storage), storage


def test_attachment_and_image_lists_round_trip():
    attachments = _attachments()
    images = [GeneratedImage(url="https://images.example/a.png", description="Visual explanation for: x...")]

    assert deserialize_attachments(serialize_attachments(attachments)) == attachments
    assert deserialize_generated_images(serialize_generated_images(images)) == images


def test_absent_lists_stay_absent():
    assert serialize_attachments(None) is None
    assert serialize_attachments([]) is None
    assert deserialize_attachments(None) is None
    assert deserialize_attachments("[]") is None

    entry = _user_entry(attachments=None)
    record = entry_to_record(entry)
    assert record["attachments"] is None
    assert record["generated_images"] is None
    restored = record_to_entry(record)
    assert restored.attachments is None
    assert restored.generated_images is None
    assert restored == entry


def test_user_turn_writes_message_before_attachment_records(tmp_path):
    coordinator, storage = _coordinator(tmp_path)
    entry = _user_entry()

    asyncio.run(coordinator.record_user_turn("tutor-1", entry, user_id="u-1"))

    assert storage.calls == [
        ("create_message", "msg_100"),
        ("create_attachment_record", "msg_100"),
        ("create_attachment_record", "msg_100"),
    ]
    records = storage.list_attachment_records("msg_100")
    assert sorted(r.name for r in records) == ["notes.pdf", "page.png"]
    assert all(r.user_id == "u-1" for r in records)
    [stored] = coordinator.load_conversation("tutor-1")
    assert stored == entry


def test_failed_message_write_leaves_no_attachment_records(tmp_path):
    coordinator, storage = _coordinator(tmp_path, fail_on=("create_message",))

    with pytest.raises(PersistenceFailure) as excinfo:
        asyncio.run(coordinator.record_user_turn("tutor-1", _user_entry()))

    assert excinfo.value.step == "message"
    assert storage.list_attachment_records("msg_100") == []


def test_failed_attachment_write_keeps_message(tmp_path):
    coordinator, storage = _coordinator(tmp_path, fail_on=("create_attachment_record",))

    with pytest.raises(PersistenceFailure) as excinfo:
        asyncio.run(coordinator.record_user_turn("tutor-1", _user_entry()))

    assert excinfo.value.step == "attachment"
    assert [e.id for e in coordinator.load_conversation("tutor-1")] == ["msg_100"]


def test_assistant_turn_writes_message_then_increments_counter(tmp_path):
    coordinator, storage = _coordinator(tmp_path)
    images = [GeneratedImage(url="https://images.example/a.png", description="d")]

    count = asyncio.run(
        coordinator.record_assistant_turn("tutor-1", _assistant_entry(generated_images=images))
    )

    assert count == 1
    assert storage.calls == [("create_message", "msg_101"), ("increment_usage", "tutor-1")]
    assert storage.load_persona("tutor-1").chat_count == 1
    [stored] = coordinator.load_conversation("tutor-1")
    assert stored.generated_images == images


def test_counter_failure_keeps_message_and_count(tmp_path):
    coordinator, storage = _coordinator(tmp_path, fail_on=("increment_usage",))

    with pytest.raises(PersistenceFailure) as excinfo:
        asyncio.run(coordinator.record_assistant_turn("tutor-1", _assistant_entry()))

    assert excinfo.value.step == "usage_counter"
    assert [e.id for e in coordinator.load_conversation("tutor-1")] == ["msg_101"]
    assert storage.load_persona("tutor-1").chat_count == 0


def test_placeholder_entries_are_never_persisted(tmp_path):
    coordinator, storage = _coordinator(tmp_path)

    with pytest.raises(PersistenceFailure):
        asyncio.run(coordinator.record_assistant_turn("tutor-1", _assistant_entry(id="temp_response")))

    assert storage.calls == []
    assert coordinator.load_conversation("tutor-1") == []

"""Persistence coordinator: ordered durable writes for each settled entry."""

import logging
from typing import List, Optional

from pydantic import TypeAdapter

from ..models.schemas import Attachment, AttachmentRecord, GeneratedImage, TranscriptEntry
from .error_handling import PersistenceFailure
from .storage import Storage
from .transcript import MessageIdGenerator

logger = logging.getLogger(__name__)

_attachments_adapter = TypeAdapter(List[Attachment])
_images_adapter = TypeAdapter(List[GeneratedImage])


def serialize_attachments(attachments: Optional[List[Attachment]]) -> Optional[str]:
    if not attachments:
        return None
    return _attachments_adapter.dump_json(attachments).decode("utf-8")


def deserialize_attachments(raw: Optional[str]) -> Optional[List[Attachment]]:
    if not raw:
        return None
    return _attachments_adapter.validate_json(raw) or None


def serialize_generated_images(images: Optional[List[GeneratedImage]]) -> Optional[str]:
    if not images:
        return None
    return _images_adapter.dump_json(images).decode("utf-8")


def deserialize_generated_images(raw: Optional[str]) -> Optional[List[GeneratedImage]]:
    if not raw:
        return None
    return _images_adapter.validate_json(raw) or None


def entry_to_record(entry: TranscriptEntry, user_id: str = "") -> dict:
    """Flatten an entry into a message record; lists become JSON strings or null."""
    return {
        "id": entry.id,
        "user_id": user_id,
        "role": entry.role,
        "content": entry.content,
        "timestamp": entry.timestamp,
        "attachments": serialize_attachments(entry.attachments),
        "generated_images": serialize_generated_images(entry.generated_images),
    }


def record_to_entry(record: dict) -> TranscriptEntry:
    return TranscriptEntry(
        id=record["id"],
        role=record["role"],
        content=record.get("content") or "",
        timestamp=record["timestamp"],
        attachments=deserialize_attachments(record.get("attachments")),
        generated_images=deserialize_generated_images(record.get("generated_images")),
    )


class PersistenceCoordinator:
    """
    Performs the durable writes of a turn in a fixed order.

    User turn: message record, then one attachment record per attachment.
    Assistant turn: message record, then the persona usage increment.
    The first failure is raised as PersistenceFailure; nothing already
    written is rolled back.
    """

    def __init__(self, storage: Storage):
        self.storage = storage

    def load_conversation(self, persona_id: str) -> List[TranscriptEntry]:
        """Load every stored entry of a persona's conversation, oldest first."""
        return [record_to_entry(r) for r in self.storage.list_messages(persona_id)]

    async def _write_message(self, persona_id: str, entry: TranscriptEntry, user_id: str) -> None:
        if entry.is_placeholder:
            raise PersistenceFailure(
                f"Refusing to persist temporary entry {entry.id}", step="message"
            )
        try:
            self.storage.create_message(persona_id, entry_to_record(entry, user_id))
        except Exception as e:
            raise PersistenceFailure(f"Failed to save message {entry.id}: {e}", step="message") from e

    async def record_user_turn(self, persona_id: str, entry: TranscriptEntry, user_id: str = "") -> None:
        await self._write_message(persona_id, entry, user_id)

        for index, attachment in enumerate(entry.attachments or []):
            record = AttachmentRecord(
                id=MessageIdGenerator.attachment_id(),
                message_id=entry.id,
                kind=attachment.kind,
                url=attachment.url,
                name=attachment.name,
                extracted_text=attachment.extracted_text or None,
                user_id=user_id,
            )
            try:
                self.storage.create_attachment_record(record)
            except Exception as e:
                raise PersistenceFailure(
                    f"Failed to save attachment {index} of message {entry.id}: {e}",
                    step="attachment",
                ) from e

        logger.info(
            f"Persisted user entry {entry.id} with {len(entry.attachments or [])} attachment records"
        )

    async def record_assistant_turn(self, persona_id: str, entry: TranscriptEntry, user_id: str = "") -> int:
        """Persist the settled reply, then bump the usage counter. Returns the new count."""
        await self._write_message(persona_id, entry, user_id)

        try:
            count = self.storage.increment_usage(persona_id)
        except Exception as e:
            raise PersistenceFailure(
                f"Failed to update usage counter of persona {persona_id}: {e}",
                step="usage_counter",
            ) from e

        logger.info(f"Persisted assistant entry {entry.id}")
        return count

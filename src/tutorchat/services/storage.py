"""File-based structured store for personas, messages and attachment records."""

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional
from filelock import FileLock
import tempfile
import shutil
import yaml

from ..models.schemas import AttachmentRecord, Persona
from .error_handling import PersistenceFailure

logger = logging.getLogger(__name__)


class StorageError(PersistenceFailure):
    """Custom exception for storage errors."""
    pass


class RecordNotFound(StorageError):
    """The requested record does not exist."""
    pass


class Storage:
    """File-based storage manager for conversation data.

    Layout under ``base_dir``::

        personas/<persona_id>.json
        messages/<persona_id>/<message_id>.json
        message_attachments/<message_id>/<attachment_id>.json
    """

    def __init__(self, base_dir: str = "data"):
        """
        Initialize storage manager.

        Args:
            base_dir: Base directory for record storage
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        for name in ("personas", "messages", "message_attachments"):
            (self.base_dir / name).mkdir(exist_ok=True)

    def _validate_segment(self, value: str, field_name: str) -> str:
        """Validate a record identifier used as a path segment."""
        normalized = str(value or "").strip()
        if not normalized:
            raise StorageError(f"{field_name} is required")
        if normalized in {".", ".."} or normalized != Path(normalized).name:
            raise StorageError(f"Invalid {field_name}: {value}")
        if "/" in normalized or "\\" in normalized:
            raise StorageError(f"Invalid {field_name}: {value}")
        return normalized

    def _get_persona_path(self, persona_id: str) -> Path:
        return self.base_dir / "personas" / f"{self._validate_segment(persona_id, 'persona_id')}.json"

    def _get_messages_dir(self, persona_id: str) -> Path:
        return self.base_dir / "messages" / self._validate_segment(persona_id, "persona_id")

    def _get_attachments_dir(self, message_id: str) -> Path:
        return self.base_dir / "message_attachments" / self._validate_segment(message_id, "message_id")

    def _atomic_write_json(self, file_path: Path, data: Dict) -> None:
        """
        Write JSON file atomically using temp file + rename.

        Args:
            file_path: Target file path
            data: Data to write
        """
        temp_fd, temp_path = tempfile.mkstemp(
            dir=file_path.parent,
            prefix=".tmp_",
            suffix=".json"
        )

        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)

            shutil.move(temp_path, file_path)
        except Exception as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise StorageError(f"Failed to write {file_path}: {e}")

    def _read_json_unlocked(self, file_path: Path) -> Dict:
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise RecordNotFound(f"File not found: {file_path}")
        except json.JSONDecodeError as e:
            raise StorageError(f"Invalid JSON in {file_path}: {e}")

    def _read_json(self, file_path: Path) -> Dict:
        """
        Read JSON file with locking.

        Args:
            file_path: File path to read

        Returns:
            Parsed JSON data
        """
        lock_path = file_path.with_suffix(".lock")
        with FileLock(lock_path, timeout=10):
            return self._read_json_unlocked(file_path)

    def _write_json(self, file_path: Path, data: Dict, overwrite: bool = True) -> None:
        """
        Write JSON file with locking and atomic write.

        Args:
            file_path: File path to write
            data: Data to write
            overwrite: When False, refuse to replace an existing record
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = file_path.with_suffix(".lock")

        try:
            with FileLock(lock_path, timeout=10):
                if not overwrite and file_path.exists():
                    raise StorageError(f"Record already exists: {file_path.stem}")
                self._atomic_write_json(file_path, data)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to write {file_path}: {e}")

    def _delete(self, file_path: Path) -> bool:
        lock_path = file_path.with_suffix(".lock")
        with FileLock(lock_path, timeout=10):
            if not file_path.exists():
                return False
            file_path.unlink()
        lock_path.unlink(missing_ok=True)
        return True

    # ========================================================================
    # Personas
    # ========================================================================

    def save_persona(self, persona: Persona) -> None:
        """Create or replace a persona record."""
        self._write_json(self._get_persona_path(persona.id), persona.model_dump())
        logger.info(f"Saved persona {persona.id}")

    def load_persona(self, persona_id: str) -> Persona:
        """Load a persona record; raises RecordNotFound if missing."""
        return Persona(**self._read_json(self._get_persona_path(persona_id)))

    def persona_exists(self, persona_id: str) -> bool:
        return self._get_persona_path(persona_id).exists()

    def list_personas(self, user_id: Optional[str] = None) -> List[Persona]:
        personas = []
        for path in sorted((self.base_dir / "personas").glob("*.json")):
            try:
                persona = Persona(**self._read_json(path))
            except (StorageError, ValueError) as e:
                logger.warning(f"Skipping unreadable persona {path.name}: {e}")
                continue
            if user_id is None or persona.user_id == user_id:
                personas.append(persona)
        return personas

    def delete_persona(self, persona_id: str) -> bool:
        return self._delete(self._get_persona_path(persona_id))

    def seed_personas(self, yaml_path: str) -> int:
        """
        Load persona records from a YAML file.

        The file holds a top-level ``personas`` list. Existing personas keep
        their usage counter.

        Returns:
            Number of personas written
        """
        with open(yaml_path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f) or {}

        count = 0
        for persona_data in yaml_data.get("personas", []):
            persona = Persona(**persona_data)
            if self.persona_exists(persona.id):
                persona.chat_count = self.load_persona(persona.id).chat_count
            self.save_persona(persona)
            count += 1

        logger.info(f"Seeded {count} personas from {yaml_path}")
        return count

    def increment_usage(self, persona_id: str) -> int:
        """
        Increment a persona's usage counter by exactly one.

        The read and the write happen under one lock so that concurrent
        increments against the same store are not lost.

        Returns:
            The new counter value
        """
        file_path = self._get_persona_path(persona_id)
        lock_path = file_path.with_suffix(".lock")

        with FileLock(lock_path, timeout=10):
            data = self._read_json_unlocked(file_path)
            data["chat_count"] = int(data.get("chat_count", 0)) + 1
            self._atomic_write_json(file_path, data)

        logger.info(f"Persona {persona_id} usage counter now {data['chat_count']}")
        return data["chat_count"]

    # ========================================================================
    # Messages
    # ========================================================================

    def create_message(self, persona_id: str, record: Dict) -> None:
        """
        Create a message record.

        Args:
            persona_id: Owning persona identifier
            record: Message fields; must contain ``id`` and ``timestamp``
        """
        message_id = self._validate_segment(record.get("id", ""), "message_id")
        if not record.get("timestamp"):
            raise StorageError(f"Message {message_id} has no timestamp")

        data = dict(record)
        data["persona_id"] = persona_id
        self._write_json(self._get_messages_dir(persona_id) / f"{message_id}.json", data, overwrite=False)
        logger.info(f"Created message {message_id} for persona {persona_id}")

    def list_messages(self, persona_id: str) -> List[Dict]:
        """
        List all message records of a persona, ordered by timestamp ascending.
        """
        messages_dir = self._get_messages_dir(persona_id)
        if not messages_dir.exists():
            return []

        records = []
        for path in messages_dir.glob("*.json"):
            if path.name.startswith(".tmp_"):
                continue
            try:
                records.append(self._read_json(path))
            except StorageError as e:
                logger.warning(f"Skipping unreadable message {path.name}: {e}")

        records.sort(key=lambda r: (r.get("timestamp", ""), r.get("id", "")))
        return records

    def delete_message(self, persona_id: str, message_id: str) -> bool:
        return self._delete(self._get_messages_dir(persona_id) / f"{self._validate_segment(message_id, 'message_id')}.json")

    # ========================================================================
    # Attachment records
    # ========================================================================

    def create_attachment_record(self, record: AttachmentRecord) -> None:
        """Create an attachment record linked to an existing message."""
        attachment_id = self._validate_segment(record.id, "attachment_id")
        target = self._get_attachments_dir(record.message_id) / f"{attachment_id}.json"
        self._write_json(target, record.model_dump(), overwrite=False)

    def list_attachment_records(self, message_id: str) -> List[AttachmentRecord]:
        """List attachment records owned by a message."""
        attachments_dir = self._get_attachments_dir(message_id)
        if not attachments_dir.exists():
            return []

        records = []
        for path in sorted(attachments_dir.glob("*.json")):
            if path.name.startswith(".tmp_"):
                continue
            records.append(AttachmentRecord(**self._read_json(path)))
        return records

"""In-memory conversation transcript with a single writer."""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from ..models.schemas import TEMP_ID_PREFIX, TranscriptEntry

logger = logging.getLogger(__name__)

PLACEHOLDER_ID = f"{TEMP_ID_PREFIX}response"


def _parse_timestamp(timestamp: str) -> datetime:
    parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TranscriptError(Exception):
    """Raised when a mutation would break transcript ordering."""
    pass


class MonotonicClock:
    """Produces ISO-8601 UTC timestamps that never go backwards."""

    def __init__(self):
        self._last: Optional[datetime] = None

    def observe(self, timestamp: str) -> None:
        """Make sure later timestamps sort after ``timestamp``."""
        seen = _parse_timestamp(timestamp)
        if self._last is None or seen > self._last:
            self._last = seen

    def now(self) -> str:
        current = datetime.now(timezone.utc)
        if self._last is not None and current < self._last:
            current = self._last
        self._last = current
        return current.isoformat()


class MessageIdGenerator:
    """
    Unique, increasing message identifiers (``msg_<epoch-ms>_<hex6>``).

    The random suffix keeps ids from separate generators distinct when they
    draw the same millisecond.
    """

    def __init__(self):
        self._last_ms = 0

    def observe(self, message_id: str) -> None:
        """Make sure later identifiers sort after an existing ``msg_<ms>...`` id."""
        parts = message_id.split("_")
        if len(parts) > 1 and parts[1].isdigit():
            self._last_ms = max(self._last_ms, int(parts[1]))

    def next_id(self) -> str:
        now_ms = int(time.time() * 1000)
        self._last_ms = max(now_ms, self._last_ms + 1)
        return f"msg_{self._last_ms}_{uuid.uuid4().hex[:6]}"

    @staticmethod
    def attachment_id() -> str:
        return f"att_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class Transcript:
    """
    Ordered sequence of transcript entries.

    Only the session controller (and the reconciler acting for it) holds a
    Transcript; renderers get immutable snapshots. Every mutation bumps
    ``version``.
    """

    def __init__(self, entries: Iterable[TranscriptEntry] = ()):
        self._entries: List[TranscriptEntry] = []
        self.version = 0
        for entry in entries:
            self.append(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def snapshot(self) -> Tuple[TranscriptEntry, ...]:
        """Deep copies of the current entries."""
        return tuple(e.model_copy(deep=True) for e in self._entries)

    def last(self) -> Optional[TranscriptEntry]:
        return self._entries[-1] if self._entries else None

    def placeholder(self) -> Optional[TranscriptEntry]:
        last = self.last()
        if last is not None and last.role == "assistant" and last.is_placeholder:
            return last
        return None

    def _check_order(self, entry: TranscriptEntry, previous: Optional[TranscriptEntry]) -> None:
        if previous is not None and _parse_timestamp(entry.timestamp) < _parse_timestamp(previous.timestamp):
            raise TranscriptError(
                f"Entry {entry.id} at {entry.timestamp} precedes {previous.id} at {previous.timestamp}"
            )

    def append(self, entry: TranscriptEntry) -> None:
        self._check_order(entry, self.last())
        self._entries.append(entry)
        self.version += 1

    def update_placeholder(self, content: str) -> TranscriptEntry:
        """Replace the in-flight entry's content with the accumulated text."""
        placeholder = self.placeholder()
        if placeholder is None:
            raise TranscriptError("No in-flight assistant entry to update")
        updated = placeholder.model_copy(update={"content": content})
        self._entries[-1] = updated
        self.version += 1
        return updated

    def replace_placeholder(self, entry: TranscriptEntry) -> None:
        """Swap the in-flight entry for its settled version, in place."""
        if entry.is_placeholder:
            raise TranscriptError("Settled entry must carry a durable identifier")
        if self.placeholder() is None:
            raise TranscriptError("No in-flight assistant entry to replace")
        previous = self._entries[-2] if len(self._entries) > 1 else None
        self._check_order(entry, previous)
        self._entries[-1] = entry
        self.version += 1

    def discard_placeholders(self) -> int:
        """Drop any in-flight entries. Returns how many were removed."""
        kept = [e for e in self._entries if not e.is_placeholder]
        removed = len(self._entries) - len(kept)
        if removed:
            self._entries = kept
            self.version += 1
        return removed

    def clear(self) -> None:
        self._entries = []
        self.version += 1

"""Session controller: runs one tutor turn at a time for a persona's conversation."""

import logging
from enum import Enum
from typing import AsyncGenerator, Dict, Iterable, List, Optional, Tuple

from ..config import settings
from ..models.schemas import (
    Attachment,
    AttachmentBatchResult,
    CandidateFile,
    Persona,
    TranscriptEntry,
    TurnResult,
)
from .attachments import AttachmentPipeline
from .error_handling import CompletionFailed, ErrorRecovery, TurnRejected
from .llm_client import ChatClient
from .persistence import PersistenceCoordinator
from .prompt_builder import build_model_messages
from .storage import Storage
from .streaming import StreamingReconciler
from .transcript import MessageIdGenerator, MonotonicClock, Transcript
from .visual_aid import VisualAidAdvisor

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Custom exception for session controller errors."""
    pass


class TurnPhase(str, Enum):
    COMPOSING = "composing"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    IDLE = "idle"


BUSY_PHASES = frozenset({TurnPhase.SUBMITTING, TurnPhase.STREAMING, TurnPhase.FINALIZING})


class Composer:
    """Staging area for the next turn: draft text plus uploaded attachments."""

    def __init__(self):
        self.text = ""
        self.attachments: List[Attachment] = []

    def stage(self, attachments: Iterable[Attachment]) -> None:
        self.attachments.extend(attachments)

    def unstage(self, index: int) -> Attachment:
        if index < 0 or index >= len(self.attachments):
            raise IndexError(f"No staged attachment at index {index}")
        return self.attachments.pop(index)

    def is_empty(self) -> bool:
        return not self.text.strip() and not self.attachments

    def take(self) -> Tuple[str, List[Attachment]]:
        """Return the staged turn and clear the staging area."""
        text, attachments = self.text.strip(), list(self.attachments)
        self.text = ""
        self.attachments = []
        return text, attachments


class SessionController:
    """
    Owns a persona's in-memory transcript and the lifecycle of each turn.

    Turn phases: composing -> submitting -> streaming -> finalizing -> idle.
    Only one turn may be in flight; submissions made meanwhile are rejected.
    """

    def __init__(
        self,
        persona_id: str,
        storage: Storage,
        pipeline: AttachmentPipeline,
        advisor: VisualAidAdvisor,
        chat_client: ChatClient,
        persistence: Optional[PersistenceCoordinator] = None,
        user_id: str = "",
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        history_window: Optional[int] = None,
    ):
        self.persona_id = persona_id
        self.storage = storage
        self.pipeline = pipeline
        self.advisor = advisor
        self.chat_client = chat_client
        self.persistence = persistence or PersistenceCoordinator(storage)
        self.user_id = user_id
        self.model = model or settings.llm_model
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self.history_window = history_window if history_window is not None else settings.history_window

        self.persona: Optional[Persona] = None
        self.transcript = Transcript()
        self.composer = Composer()
        self.clock = MonotonicClock()
        self.ids = MessageIdGenerator()
        self.phase = TurnPhase.IDLE
        self.last_error: Optional[str] = None
        self.view_cleared = False

    @property
    def is_busy(self) -> bool:
        return self.phase in BUSY_PHASES

    def open(self) -> None:
        """Load the persona and its full stored conversation."""
        self.persona = self.storage.load_persona(self.persona_id)
        entries = self.persistence.load_conversation(self.persona_id)
        self.transcript = Transcript(entries)
        self.view_cleared = False
        for entry in entries:
            self.ids.observe(entry.id)
        if entries:
            self.clock.observe(entries[-1].timestamp)
        logger.info(f"Opened conversation with persona {self.persona_id} ({len(entries)} entries)")

    def snapshot(self) -> Tuple[TranscriptEntry, ...]:
        return self.transcript.snapshot()

    def set_text(self, text: str) -> None:
        self.composer.text = text
        if not self.is_busy:
            self.phase = TurnPhase.COMPOSING

    async def add_files(self, files: Iterable[CandidateFile]) -> AttachmentBatchResult:
        """Run the attachment pipeline and stage whatever it accepted."""
        result = await self.pipeline.process(files)
        self.composer.stage(result.accepted)
        if result.accepted and not self.is_busy:
            self.phase = TurnPhase.COMPOSING
        return result

    def remove_attachment(self, index: int) -> Attachment:
        return self.composer.unstage(index)

    def clear_view(self) -> None:
        """Clear the visible transcript. Stored records are kept and come back on the next open()."""
        if self.is_busy:
            raise TurnRejected("turn_in_progress")
        self.transcript.clear()
        self.view_cleared = True
        logger.info(f"Cleared transcript view for persona {self.persona_id}")

    def _check_submittable(self) -> None:
        if self.is_busy:
            raise TurnRejected("turn_in_progress")
        if self.composer.is_empty():
            raise TurnRejected("empty_turn")
        if self.persona is None:
            raise SessionError(f"Conversation with persona {self.persona_id} is not open")

    async def submit_stream(
        self, text: Optional[str] = None, user_id: Optional[str] = None
    ) -> AsyncGenerator[Dict, None]:
        """
        Submit the staged turn and run it to completion.

        Yields events:
        - {'type': 'rejected', 'reason': 'turn_in_progress' | 'empty_turn'}
        - {'type': 'user_entry', 'entry': {...}}
        - {'type': 'assistant_chunk', 'content': '<accumulated text>'}
        - {'type': 'visual_aid', 'image': {...}}
        - {'type': 'assistant_complete', 'entry': {...}, 'chat_count': n}
        - {'type': 'error', 'message': '...', 'error_type': '...', 'step': ...}
        """
        if text is not None and not self.is_busy:
            self.composer.text = text

        try:
            self._check_submittable()
        except TurnRejected as e:
            logger.info(f"Rejected submission for persona {self.persona_id}: {e.reason}")
            yield {"type": "rejected", "reason": e.reason}
            return

        owner = user_id if user_id is not None else self.user_id
        persona = self.persona
        self.phase = TurnPhase.SUBMITTING
        self.last_error = None

        # Cleared before the outcome is known; a failed turn does not restore it.
        content, attachments = self.composer.take()

        history = self.transcript.snapshot()
        user_entry = TranscriptEntry(
            id=self.ids.next_id(),
            role="user",
            content=content,
            timestamp=self.clock.now(),
            attachments=attachments or None,
        )
        self.transcript.append(user_entry)

        reconciler = StreamingReconciler(self.transcript, self.ids, self.clock)
        try:
            yield {"type": "user_entry", "entry": user_entry.model_dump()}

            await self.persistence.record_user_turn(self.persona_id, user_entry, owner)

            messages = build_model_messages(persona, history, user_entry, self.history_window)

            self.phase = TurnPhase.STREAMING
            try:
                async for accumulated in reconciler.consume(
                    self.chat_client.stream_chat(messages, model=self.model, max_tokens=self.max_tokens)
                ):
                    yield {"type": "assistant_chunk", "content": accumulated}
            except CompletionFailed:
                raise
            except Exception as e:
                raise CompletionFailed(f"Chat completion failed: {e}") from e

            self.phase = TurnPhase.FINALIZING
            generated_images = []
            image = await self.advisor.visual_aid_for(user_entry.content, persona.subject)
            if image is not None:
                generated_images.append(image)
                yield {"type": "visual_aid", "image": image.model_dump()}

            assistant_entry = reconciler.settle(generated_images)
            chat_count = await self.persistence.record_assistant_turn(
                self.persona_id, assistant_entry, owner
            )
            persona.chat_count = chat_count

            yield {
                "type": "assistant_complete",
                "entry": assistant_entry.model_dump(),
                "chat_count": chat_count,
            }

        except Exception as e:
            reconciler.abandon()
            ErrorRecovery.log_turn_failure(self.persona_id, e)
            self.last_error = ErrorRecovery.notification_for(e)
            yield {
                "type": "error",
                "message": self.last_error,
                "error_type": ErrorRecovery.classify_error(e).value,
                "step": getattr(e, "step", None),
            }

        finally:
            reconciler.abandon()
            self.phase = TurnPhase.IDLE

    async def submit(self, text: Optional[str] = None, user_id: Optional[str] = None) -> TurnResult:
        """Run a turn to completion and summarize it."""
        user_entry = None
        assistant_entry = None
        rejected_reason = None
        error = None

        async for event in self.submit_stream(text, user_id=user_id):
            if event["type"] == "rejected":
                rejected_reason = event["reason"]
            elif event["type"] == "user_entry":
                user_entry = TranscriptEntry(**event["entry"])
            elif event["type"] == "assistant_complete":
                assistant_entry = TranscriptEntry(**event["entry"])
            elif event["type"] == "error":
                error = event["message"]

        if rejected_reason is not None:
            return TurnResult(status="rejected", error=rejected_reason)
        if error is not None:
            return TurnResult(
                status="failed",
                user_entry=user_entry,
                assistant_entry=self._settled_assistant_after(user_entry),
                error=error,
            )
        return TurnResult(status="completed", user_entry=user_entry, assistant_entry=assistant_entry)

    def _settled_assistant_after(self, user_entry: Optional[TranscriptEntry]) -> Optional[TranscriptEntry]:
        """The settled reply that followed ``user_entry``, if one made it into the transcript."""
        if user_entry is None:
            return None
        entries = self.transcript.snapshot()
        for index, entry in enumerate(entries):
            if entry.id == user_entry.id and index + 1 < len(entries):
                follower = entries[index + 1]
                if follower.role == "assistant" and not follower.is_placeholder:
                    return follower
        return None

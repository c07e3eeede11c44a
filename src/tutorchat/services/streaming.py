"""Streaming reconciler: folds a response stream into one evolving assistant entry."""

import logging
from enum import Enum
from typing import AsyncIterator, List, Optional

from ..models.schemas import GeneratedImage, TranscriptEntry
from .transcript import (
    PLACEHOLDER_ID,
    MessageIdGenerator,
    MonotonicClock,
    Transcript,
    TranscriptError,
)

logger = logging.getLogger(__name__)


class ReconcilerState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    SETTLED = "settled"


class StreamingReconciler:
    """
    Materializes one turn's streamed reply as a single assistant entry.

    ``apply`` takes the full accumulated text, not the delta, so replaying
    the same cumulative text is harmless. ``settle`` swaps the placeholder
    for the durable entry in place.
    """

    def __init__(self, transcript: Transcript, ids: MessageIdGenerator, clock: MonotonicClock):
        self.transcript = transcript
        self.ids = ids
        self.clock = clock
        self.state = ReconcilerState.IDLE
        self.text = ""

    def apply(self, accumulated: str) -> TranscriptEntry:
        """Reconcile the transcript with the text received so far."""
        if self.state == ReconcilerState.SETTLED:
            raise TranscriptError("Turn already settled")

        self.state = ReconcilerState.STREAMING
        self.text = accumulated

        if self.transcript.placeholder() is not None:
            return self.transcript.update_placeholder(accumulated)

        entry = TranscriptEntry(
            id=PLACEHOLDER_ID,
            role="assistant",
            content=accumulated,
            timestamp=self.clock.now(),
        )
        self.transcript.append(entry)
        return entry

    async def consume(self, deltas: AsyncIterator[str]) -> AsyncIterator[str]:
        """
        Accumulate a stream of text deltas, reconciling after each one.

        Yields:
            The accumulated text after every non-empty delta
        """
        accumulated = self.text
        async for delta in deltas:
            if not delta:
                continue
            accumulated += delta
            self.apply(accumulated)
            yield accumulated

    def settle(self, generated_images: Optional[List[GeneratedImage]] = None) -> TranscriptEntry:
        """Replace the placeholder with the final entry under a durable id."""
        if self.state == ReconcilerState.SETTLED:
            raise TranscriptError("Turn already settled")

        final = TranscriptEntry(
            id=self.ids.next_id(),
            role="assistant",
            content=self.text,
            timestamp=self.clock.now(),
            generated_images=generated_images or None,
        )
        if self.transcript.placeholder() is not None:
            self.transcript.replace_placeholder(final)
        else:
            # Empty stream: nothing was ever shown
            self.transcript.append(final)

        self.state = ReconcilerState.SETTLED
        logger.info(f"Settled assistant entry {final.id} ({len(final.content)} chars)")
        return final

    def abandon(self) -> None:
        """Drop the in-flight placeholder after a failed stream."""
        if self.state != ReconcilerState.SETTLED:
            removed = self.transcript.discard_placeholders()
            if removed:
                logger.info("Discarded in-flight assistant entry")
        self.state = ReconcilerState.SETTLED

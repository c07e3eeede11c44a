"""Pydantic models for data validation and type safety."""

from dataclasses import dataclass
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

TEMP_ID_PREFIX = "temp_"


class Persona(BaseModel):
    """Configured AI tutor profile driving the system instructions."""
    id: str
    name: str
    subject: str
    personality: str = ""
    teaching_style: str = ""
    description: str = ""
    expertise: str = ""
    chat_count: int = 0
    user_id: str = ""


class Attachment(BaseModel):
    """A validated, uploaded user file."""
    kind: Literal["image", "document"]
    name: str
    url: str
    size: int = Field(ge=0)
    content_type: str = ""
    extracted_text: str = ""


class GeneratedImage(BaseModel):
    """An illustration generated for an assistant reply."""
    url: str
    description: str


class TranscriptEntry(BaseModel):
    """A single message in a conversation transcript."""
    id: str
    role: Literal["user", "assistant"]
    content: str = ""
    timestamp: str
    attachments: Optional[List[Attachment]] = None
    generated_images: Optional[List[GeneratedImage]] = None

    @property
    def is_placeholder(self) -> bool:
        """True while this entry is an in-flight assistant reply."""
        return self.id.startswith(TEMP_ID_PREFIX)


class AttachmentRejection(BaseModel):
    """A file refused by the attachment pipeline, with the reason."""
    filename: str
    kind: Literal["FileTooLarge", "UnsupportedType"]
    message: str


class AttachmentBatchResult(BaseModel):
    """Outcome of processing one batch of candidate files."""
    accepted: List[Attachment] = Field(default_factory=list)
    rejected: List[AttachmentRejection] = Field(default_factory=list)


class AttachmentRecord(BaseModel):
    """Independent durable mirror of an attachment, linked by message id."""
    id: str
    message_id: str
    kind: Literal["image", "document"]
    url: str
    name: str
    extracted_text: Optional[str] = None
    user_id: str = ""


class TurnResult(BaseModel):
    """Summary of one submitted turn."""
    status: Literal["completed", "failed", "rejected"]
    user_entry: Optional[TranscriptEntry] = None
    assistant_entry: Optional[TranscriptEntry] = None
    error: Optional[str] = None


class UserIdentity(BaseModel):
    """Current user as reported by the identity provider."""
    user_id: str
    email: str = ""


@dataclass(frozen=True)
class CandidateFile:
    """A user-supplied file before validation and upload."""
    filename: str
    data: bytes
    content_type: str = ""

    @property
    def size(self) -> int:
        return len(self.data)

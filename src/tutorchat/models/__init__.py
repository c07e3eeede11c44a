"""Models package initialization."""

from .schemas import (
    Persona,
    Attachment,
    GeneratedImage,
    TranscriptEntry,
    AttachmentRejection,
    AttachmentBatchResult,
    AttachmentRecord,
    TurnResult,
    UserIdentity,
    CandidateFile,
)

__all__ = [
    "Persona",
    "Attachment",
    "GeneratedImage",
    "TranscriptEntry",
    "AttachmentRejection",
    "AttachmentBatchResult",
    "AttachmentRecord",
    "TurnResult",
    "UserIdentity",
    "CandidateFile",
]

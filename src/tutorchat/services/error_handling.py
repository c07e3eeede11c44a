"""Error taxonomy and user-facing notifications for the session pipeline."""

import logging
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class TutorChatError(Exception):
    """Base class for all pipeline errors."""
    pass


class AttachmentValidationError(TutorChatError):
    """A candidate file failed validation. Non-fatal to the batch."""

    kind = "ValidationError"

    def __init__(self, filename: str, message: str):
        super().__init__(message)
        self.filename = filename


class FileTooLarge(AttachmentValidationError):
    kind = "FileTooLarge"


class UnsupportedType(AttachmentValidationError):
    kind = "UnsupportedType"


class UpstreamUnavailable(TutorChatError):
    """An external capability (upload, extraction, completion, generation) failed."""
    pass


class UploadFailed(UpstreamUnavailable):
    pass


class CompletionFailed(UpstreamUnavailable):
    pass


class PersistenceFailure(TutorChatError):
    """A durable write failed. Earlier writes of the same turn are kept."""

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.step = step


class TurnRejected(TutorChatError):
    """A submission was refused before any work started."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ErrorType(Enum):
    """Types of errors that can reach the session controller."""
    VALIDATION = "validation"
    UPLOAD_FAILED = "upload_failed"
    COMPLETION_FAILED = "completion_failed"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    PERSISTENCE_FAILURE = "persistence_failure"
    UNKNOWN_ERROR = "unknown_error"


class ErrorRecovery:
    """Classifies errors and picks the single notification shown to the user."""

    # Most specific first
    ERROR_CLASSES = (
        (AttachmentValidationError, ErrorType.VALIDATION),
        (UploadFailed, ErrorType.UPLOAD_FAILED),
        (CompletionFailed, ErrorType.COMPLETION_FAILED),
        (UpstreamUnavailable, ErrorType.UPSTREAM_UNAVAILABLE),
        (PersistenceFailure, ErrorType.PERSISTENCE_FAILURE),
    )

    USER_MESSAGES = {
        ErrorType.VALIDATION: "Some files could not be attached. Please check their size and type.",
        ErrorType.UPLOAD_FAILED: "Failed to upload files. Please try again.",
        ErrorType.COMPLETION_FAILED: "The tutor could not respond right now. Please try again.",
        ErrorType.UPSTREAM_UNAVAILABLE: "A required service is unavailable. Please try again.",
        ErrorType.PERSISTENCE_FAILURE: "Failed to save your conversation. Please try again.",
        ErrorType.UNKNOWN_ERROR: "Failed to send message. Please try again.",
    }

    @classmethod
    def classify_error(cls, exception: BaseException) -> ErrorType:
        """Map an exception onto the pipeline's error taxonomy."""
        for error_class, error_type in cls.ERROR_CLASSES:
            if isinstance(exception, error_class):
                return error_type
        logger.warning(f"Could not classify error: {str(exception)[:100]}")
        return ErrorType.UNKNOWN_ERROR

    @classmethod
    def get_user_message(cls, error_type: ErrorType) -> str:
        return cls.USER_MESSAGES.get(error_type, cls.USER_MESSAGES[ErrorType.UNKNOWN_ERROR])

    @classmethod
    def notification_for(cls, exception: BaseException) -> str:
        """Single user-visible notification for a failed turn."""
        return cls.get_user_message(cls.classify_error(exception))

    @classmethod
    def log_turn_failure(cls, persona_id: str, exception: BaseException) -> None:
        error_type = cls.classify_error(exception)
        step = getattr(exception, "step", None)
        logger.error(
            f"Turn failed for persona {persona_id}:\n"
            f"  Error type: {error_type.value}\n"
            f"  Failed step: {step or '-'}\n"
            f"  Original error: {str(exception)[:200]}",
            exc_info=exception,
        )

"""Attachment pipeline: validate, upload and extract text from user files."""

import logging
import time
from typing import Iterable, Literal, Optional

from ..config import settings
from ..models.schemas import (
    Attachment,
    AttachmentBatchResult,
    AttachmentRejection,
    CandidateFile,
)
from .blob_store import BlobStore
from .error_handling import (
    AttachmentValidationError,
    FileTooLarge,
    UnsupportedType,
    UploadFailed,
    UpstreamUnavailable,
)
from .text_extraction import TextExtractor

logger = logging.getLogger(__name__)

DOCUMENT_EXTENSIONS = (".pdf", ".txt", ".doc", ".docx")

AttachmentKind = Literal["image", "document"]


def classify_file(candidate: CandidateFile) -> AttachmentKind:
    """
    Decide whether a file is an image or a document.

    Raises:
        UnsupportedType: If it is neither
    """
    content_type = (candidate.content_type or "").lower()
    name = (candidate.filename or "").lower()

    if content_type.startswith("image/"):
        return "image"
    if (
        content_type == "application/pdf"
        or "document" in content_type
        or "text" in content_type
        or name.endswith(DOCUMENT_EXTENSIONS)
    ):
        return "document"
    raise UnsupportedType(
        candidate.filename,
        f"{candidate.filename} is not supported. Please upload images or documents.",
    )


def validate_file(candidate: CandidateFile, max_bytes: int) -> AttachmentKind:
    """Check size then type; returns the attachment kind."""
    if candidate.size > max_bytes:
        limit_mb = max_bytes // (1024 * 1024)
        raise FileTooLarge(
            candidate.filename,
            f"{candidate.filename} is larger than {limit_mb}MB. Please choose a smaller file.",
        )
    return classify_file(candidate)


def _sanitize_name(value: str) -> str:
    return "".join(
        ch if ch.isalnum() or ch in ("_", "-", ".") else "_" for ch in str(value or "")
    ) or "file"


class AttachmentPipeline:
    """Turns a batch of candidate files into attachments plus a rejection report."""

    def __init__(
        self,
        blob_store: BlobStore,
        extractor: TextExtractor,
        max_bytes: Optional[int] = None,
        path_prefix: Optional[str] = None,
    ):
        self.blob_store = blob_store
        self.extractor = extractor
        self.max_bytes = max_bytes if max_bytes is not None else settings.max_attachment_bytes
        self.path_prefix = (path_prefix if path_prefix is not None else settings.upload_path_prefix).strip("/")

    def _upload_path(self, filename: str) -> str:
        name = f"{int(time.time() * 1000)}-{_sanitize_name(filename)}"
        return f"{self.path_prefix}/{name}" if self.path_prefix else name

    async def _extract_text(self, url: str, filename: str) -> str:
        try:
            return await self.extractor.extract(url) or ""
        except UpstreamUnavailable as e:
            logger.warning(f"Failed to extract text from {filename}: {e}")
        except Exception as e:
            logger.warning(f"Unexpected error extracting text from {filename}: {e}")
        return ""

    async def process(self, files: Iterable[CandidateFile]) -> AttachmentBatchResult:
        """
        Validate, upload and (for documents) extract text, preserving input order.

        Validation failures are reported per file and never stop the batch.

        Raises:
            UploadFailed: If the blob store rejects an accepted file
        """
        result = AttachmentBatchResult()

        for candidate in files:
            try:
                kind = validate_file(candidate, self.max_bytes)
            except AttachmentValidationError as e:
                logger.info(f"Rejected {candidate.filename}: {e.kind}")
                result.rejected.append(
                    AttachmentRejection(filename=candidate.filename, kind=e.kind, message=str(e))
                )
                continue

            try:
                url = await self.blob_store.upload(
                    candidate.data, self._upload_path(candidate.filename), overwrite=True
                )
            except UploadFailed:
                raise
            except Exception as e:
                raise UploadFailed(f"Failed to upload {candidate.filename}: {e}") from e

            extracted_text = ""
            if kind == "document":
                extracted_text = await self._extract_text(url, candidate.filename)

            result.accepted.append(
                Attachment(
                    kind=kind,
                    name=candidate.filename,
                    url=url,
                    size=candidate.size,
                    content_type=candidate.content_type or "",
                    extracted_text=extracted_text,
                )
            )

        logger.info(
            f"Processed attachment batch: {len(result.accepted)} accepted, {len(result.rejected)} rejected"
        )
        return result

"""Best-effort text extraction from uploaded documents."""

from __future__ import annotations

import io
import logging
from abc import ABC, abstractmethod
from typing import List, Optional
from urllib.parse import urlparse

import httpx
from docx import Document
from pypdf import PdfReader

from .blob_store import LocalBlobStore
from .error_handling import UpstreamUnavailable

logger = logging.getLogger(__name__)


class ExtractionError(UpstreamUnavailable):
    """Text could not be extracted from a document."""
    pass


class TextExtractor(ABC):
    """Abstract text extraction capability."""

    @abstractmethod
    async def extract(self, url: str) -> str:
        """Return the plain text of the document at ``url``."""
        pass


def parse_text_from_bytes(filename: str, data: bytes) -> str:
    """Parse common document types into plain text.

    Supports .pdf (pypdf), .docx (python-docx) and falls back to a utf-8
    decode with replacement for everything else.
    """
    name = (filename or "").lower()
    if name.endswith(".pdf"):
        reader = PdfReader(io.BytesIO(data))
        texts: List[str] = []
        for page in reader.pages:
            text = page.extract_text() or ""
            if text:
                texts.append(text)
        return "\n".join(texts)
    if name.endswith(".docx"):
        doc = Document(io.BytesIO(data))
        paragraphs = [p.text for p in doc.paragraphs if p.text and p.text.strip()]
        return "\n".join(paragraphs)
    return data.decode("utf-8", errors="replace")


class DocumentTextExtractor(TextExtractor):
    """Reads local blobs directly and downloads anything else over HTTP."""

    def __init__(self, blob_store: Optional[LocalBlobStore] = None, timeout: float = 30.0):
        self.blob_store = blob_store
        self.timeout = timeout

    async def _fetch(self, url: str) -> bytes:
        if self.blob_store is not None:
            local_path = self.blob_store.local_path_for(url)
            if local_path is not None:
                try:
                    return local_path.read_bytes()
                except OSError as e:
                    raise ExtractionError(f"Failed to read {local_path}: {e}") from e

        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPStatusError as e:
            raise ExtractionError(f"HTTP error: {e.response.status_code} fetching {url}")
        except httpx.RequestError as e:
            raise ExtractionError(f"Request error: {e}")

    async def extract(self, url: str) -> str:
        data = await self._fetch(url)
        filename = urlparse(url).path.rsplit("/", 1)[-1]
        try:
            return parse_text_from_bytes(filename, data)
        except Exception as e:
            raise ExtractionError(f"Failed to parse {filename}: {e}") from e

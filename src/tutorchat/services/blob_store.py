"""Blob storage for uploaded attachments."""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote

from .error_handling import UploadFailed

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Abstract durable blob storage yielding publicly addressable URLs."""

    @abstractmethod
    async def upload(self, data: bytes, path: str, overwrite: bool = True) -> str:
        """
        Store ``data`` under ``path``.

        Returns:
            Public URL of the stored blob

        Raises:
            UploadFailed: If the blob could not be stored
        """
        pass


class LocalBlobStore(BlobStore):
    """Blob store backed by a local directory served by the API under /blobs."""

    URL_PREFIX = "/blobs/"

    def __init__(self, root_dir: str, public_base_url: str):
        self.root_dir = Path(root_dir).resolve()
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve_path(self, path: str) -> Path:
        target = (self.root_dir / path).resolve()
        if self.root_dir not in target.parents:
            raise UploadFailed(f"Invalid blob path: {path}")
        return target

    def url_for(self, path: str) -> str:
        return f"{self.public_base_url}{self.URL_PREFIX}{quote(path)}"

    def local_path_for(self, url: str) -> Optional[Path]:
        """Map a URL issued by this store back to its file, if it is one of ours."""
        prefix = f"{self.public_base_url}{self.URL_PREFIX}"
        if not url.startswith(prefix):
            return None
        try:
            return self._resolve_path(unquote(url[len(prefix):]))
        except UploadFailed:
            return None

    async def upload(self, data: bytes, path: str, overwrite: bool = True) -> str:
        target = self._resolve_path(path)
        if target.exists() and not overwrite:
            raise UploadFailed(f"Blob already exists: {path}")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(dir=target.parent, prefix=".tmp_")
            with os.fdopen(temp_fd, "wb") as f:
                f.write(data)
            os.replace(temp_path, target)
        except OSError as e:
            raise UploadFailed(f"Failed to store blob {path}: {e}") from e

        logger.info(f"Stored blob {path} ({len(data)} bytes)")
        return self.url_for(path)


"""
RExeli Backend — Document Storage Service
===========================================

What:  Stores uploaded source documents and reads them back by reference.
Why:   The registry and metered extraction only hold an opaque `file_ref`;
       everything about where bytes live stays behind this interface.
How:   `DocumentStorage` is the contract (`put` / `get` / `delete`).
       `LocalDocumentStorage` writes to date-organized directories under
       STORAGE_ROOT with UUID filenames using async file I/O.
Who:   Training document upload route, RegistryService.process_document,
       MeteredExtractionService.

Security Model:
    1. Extension allow-list checked before anything is written
    2. Size checked against MAX_FILE_SIZE (Content-Length first, then bytes)
    3. UUID filenames: no user input reaches the file system path
    4. get() resolves the reference and refuses anything outside the root
"""

import logging
import os
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

import aiofiles

from rexeli.config import settings
from rexeli.exceptions import FileStorageError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# ── Allowed File Types ────────────────────────────────────────────────────
# Source documents arrive as PDFs, spreadsheets or page scans.
ALLOWED_EXTENSIONS = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
    ".csv": "text/csv",
}


class DocumentStorage(ABC):
    """
    Contract for blob storage of source documents.

    Implementations:
        - LocalDocumentStorage: local disk (development, single node)
        - Tests use an in-memory fake with the same three methods
    """

    @abstractmethod
    async def put(self, blob: bytes, filename: str, content_length: Optional[int] = None) -> str:
        """Validates and stores `blob`; returns the reference to persist."""
        ...

    @abstractmethod
    async def get(self, file_ref: str) -> bytes:
        """Returns the stored bytes. NotFoundError if the reference is unknown."""
        ...

    @abstractmethod
    async def delete(self, file_ref: str) -> None:
        """Best-effort removal of a stored blob."""
        ...

    @staticmethod
    def mime_type_for(filename: str) -> str:
        return ALLOWED_EXTENSIONS.get(Path(filename).suffix.lower(), "application/octet-stream")


class LocalDocumentStorage(DocumentStorage):
    """
    Stores documents on local disk.

    Directory Structure:
        storage/
        └── 2024/
            └── 01/
                └── 15/
                    ├── a1b2c3d4-5678.pdf
                    └── e5f6g7h8-9012.xlsx

    The returned file_ref is the path relative to the storage root
    (e.g. "2024/01/15/a1b2c3d4-5678.pdf").
    """

    def __init__(self, storage_root: Optional[str] = None):
        """
        Args:
            storage_root: Override the default storage path (used in tests).
        """
        self.storage_root = Path(storage_root or settings.storage_root).resolve()
        self.storage_root.mkdir(parents=True, exist_ok=True)
        logger.info("LocalDocumentStorage initialized with storage_root=%s", self.storage_root)

    def validate_extension(self, filename: str) -> str:
        """Returns the normalized extension or raises ValidationError."""
        ext = Path(filename).suffix.lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise ValidationError(
                message=(
                    f"File type '{ext}' is not supported. "
                    f"Allowed types: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
                ),
                field="file",
                context={"extension": ext, "allowed": sorted(ALLOWED_EXTENSIONS)},
            )
        return ext

    def validate_size(self, content_length: Optional[int], actual_size: int) -> None:
        """
        Checks the Content-Length header first, then the actual byte count
        (some clients send a wrong header).
        """
        max_mb = settings.max_file_size / (1024 * 1024)

        if content_length and content_length > settings.max_file_size:
            raise ValidationError(
                message=f"File size exceeds maximum of {max_mb:.0f}MB.",
                field="file",
                context={"max_size_mb": max_mb, "reported_size": content_length},
            )

        if actual_size > settings.max_file_size:
            raise ValidationError(
                message=(
                    f"File size ({actual_size / (1024 * 1024):.1f}MB) "
                    f"exceeds maximum of {max_mb:.0f}MB."
                ),
                field="file",
                context={"max_size_mb": max_mb, "actual_size": actual_size},
            )

        if actual_size == 0:
            raise ValidationError(message="Uploaded file is empty", field="file")

    def _generate_storage_path(self, extension: str) -> Tuple[Path, str]:
        """Creates a YYYY/MM/DD/<uuid><ext> path; returns (absolute, relative)."""
        now = datetime.now(timezone.utc)
        relative_path = f"{now.strftime('%Y/%m/%d')}/{uuid.uuid4()}{extension}"
        return self.storage_root / relative_path, relative_path

    def _resolve(self, file_ref: str) -> Path:
        """Maps a reference back to an absolute path inside the storage root."""
        full_path = (self.storage_root / file_ref).resolve()
        if not full_path.is_relative_to(self.storage_root):
            raise ValidationError(message="Invalid file reference", field="file_ref")
        return full_path

    async def put(self, blob: bytes, filename: str, content_length: Optional[int] = None) -> str:
        ext = self.validate_extension(filename)
        self.validate_size(content_length, len(blob))

        absolute_path, relative_path = self._generate_storage_path(ext)
        try:
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(absolute_path, "wb") as f:
                await f.write(blob)
        except OSError as e:
            logger.error("Failed to store document at %s: %s", absolute_path, str(e))
            raise FileStorageError(
                message="Failed to save the uploaded document. Please try again.",
                context={"os_error": type(e).__name__},
            )

        logger.info("Document stored: %s (%d bytes)", relative_path, len(blob))
        return relative_path

    async def get(self, file_ref: str) -> bytes:
        path = self._resolve(file_ref)
        if not path.is_file():
            raise NotFoundError(resource="document file", resource_id=file_ref)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except OSError as e:
            logger.error("Failed to read document %s: %s", file_ref, str(e))
            raise FileStorageError(
                message="Failed to read the stored document.",
                context={"file_ref": file_ref, "os_error": type(e).__name__},
            )

    async def delete(self, file_ref: str) -> None:
        """
        Removes a stored file. Missing files are ignored; OS errors are
        logged because a leftover blob is not a user-facing failure.
        """
        try:
            path = self._resolve(file_ref)
            if path.exists():
                os.remove(path)
                logger.info("Deleted document: %s", file_ref)
            else:
                logger.debug("Delete: document already gone: %s", file_ref)
        except (OSError, ValidationError) as e:
            logger.warning("Failed to delete document %s: %s", file_ref, str(e))


# ── Singleton Instance ────────────────────────────────────────────────────
document_storage = LocalDocumentStorage()

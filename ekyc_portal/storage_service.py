"""
Private document storage.
Bucket-scoped object store on the local filesystem. Objects are opaque blobs
keyed by caller-constructed paths; there is no public read path.
"""

import logging
import re
import time
from pathlib import Path
from typing import Optional

from .errors import StoreError

log = logging.getLogger(__name__)

# Metadata-level checks only, file contents are never inspected
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp", "application/pdf"}

_UNSAFE_DOC_TYPE = re.compile(r"[^a-zA-Z0-9_\-]")
_UNSAFE_FILENAME = re.compile(r"[^a-zA-Z0-9_.\-]")


def sanitize_doc_type(doc_type: Optional[str]) -> str:
    return _UNSAFE_DOC_TYPE.sub("_", str(doc_type or "unknown"))[:50]


def sanitize_filename(filename: Optional[str]) -> str:
    return _UNSAFE_FILENAME.sub("_", str(filename or "file"))[:200]


def build_document_path(owner_id: str, submission_id: str, doc_type: Optional[str],
                        filename: Optional[str], timestamp_ms: Optional[int] = None) -> str:
    """<ownerId>/<submissionId>/<sanitizedDocType>/<timestamp>_<sanitizedFilename>"""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{owner_id}/{submission_id}/{sanitize_doc_type(doc_type)}/{timestamp_ms}_{sanitize_filename(filename)}"


class StorageService:
    """Service for storing KYC documents in a private bucket"""

    def __init__(self, root_dir, bucket: str):
        self.root = Path(root_dir)
        self.bucket = bucket

    @property
    def bucket_dir(self) -> Path:
        return self.root / self.bucket

    def _resolve(self, path: str) -> Path:
        bucket_dir = self.bucket_dir.resolve()
        target = (bucket_dir / path).resolve()
        if bucket_dir not in target.parents:
            raise StoreError(f"Invalid object path: {path}", code="invalid_path")
        return target

    def upload(self, path: str, content: bytes, content_type: Optional[str] = None,
               upsert: bool = False) -> str:
        """Write an object. Refuses to overwrite unless upsert is set."""
        target = self._resolve(path)
        if target.exists() and not upsert:
            raise StoreError("The resource already exists", code="duplicate")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise StoreError(f"Upload failed: {exc}", code="upload_failed") from exc
        log.info(f"Stored object {self.bucket}/{path} ({len(content)} bytes, {content_type})")
        return path

    def download(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise StoreError("Object not found", code="not_found")
        return target.read_bytes()

    def remove(self, path: str) -> bool:
        """Delete an object. Returns False when there was nothing to delete."""
        target = self._resolve(path)
        if not target.is_file():
            return False
        try:
            target.unlink()
        except OSError as exc:
            raise StoreError(f"Remove failed: {exc}", code="remove_failed") from exc
        log.info(f"Removed object {self.bucket}/{path}")
        return True

# pdfforge/blobstore.py
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import quote

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 50 * 1024 * 1024
RETENTION_SECONDS = 60 * 60
DELETE_BATCH_SIZE = 100
READY_PREFIX = "ready"

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".png": "image/png",
    ".jpg": "image/jpeg",
}


@dataclass
class Uploaded:
    url: str
    size_bytes: int
    key: str
    expires_at: float


@dataclass
class Skipped:
    reason: str


UploadOutcome = Union[Uploaded, Skipped]


@dataclass
class PurgeSummary:
    deleted_count: int = 0
    total_found: int = 0
    execution_time_ms: int = 0
    cutoff: float = 0.0
    details: List[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        if not self.total_found:
            message = "No old files to delete"
        elif self.deleted_count == self.total_found:
            message = "Cleanup completed successfully"
        else:
            message = f"Cleanup finished with errors: {self.total_found - self.deleted_count} file(s) not deleted"
        return {
            "success": True,
            "message": message,
            "deletedCount": self.deleted_count,
            "totalFound": self.total_found,
            "executionTime": self.execution_time_ms,
            "cutoffTime": datetime.fromtimestamp(self.cutoff, tz=timezone.utc).isoformat(),
            "details": self.details,
        }


def content_type_for(name: str) -> str:
    return CONTENT_TYPES.get(Path(name).suffix.lower(), "application/octet-stream")


def safe_object_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.\-]", "_", name or "file") or "file"


def stamped_key(prefix: str, name: str, now: Optional[float] = None) -> str:
    ts = int((time.time() if now is None else now) * 1000)
    return f"{prefix}/{ts}_{safe_object_name(name)}"


def oversize_reason(size: int) -> Optional[str]:
    if size <= MAX_UPLOAD_BYTES:
        return None
    return (
        f"File size exceeds 50MB ({size / (1024 * 1024):.2f}MB). "
        "Please download directly instead of cloud upload."
    )


class BlobStore:
    """
    Expiring object storage for finished outputs. Objects live for
    RETENTION_SECONDS after creation; `purge_expired` is the sweep.
    """

    name = "blobstore"

    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under key and return a retrievable URL."""
        raise NotImplementedError

    def signed_url(self, key: str, expires_in: int = RETENTION_SECONDS) -> str:
        raise NotImplementedError

    def list_objects(self) -> List[Tuple[str, float]]:
        """(key, created_at) for every stored object."""
        raise NotImplementedError

    def delete(self, keys: List[str]) -> None:
        raise NotImplementedError

    def upload_if_eligible(self, data: bytes, suggested_name: str, original_name: Optional[str] = None) -> UploadOutcome:
        """Best-effort upload. Never raises; failures come back as Skipped."""
        size = len(data)
        reason = oversize_reason(size)
        if reason:
            logger.warning("Skipping upload of %s: %s", original_name or suggested_name, reason)
            return Skipped(reason)

        key = stamped_key(READY_PREFIX, suggested_name)
        try:
            url = self.put(key, data, content_type_for(suggested_name))
        except Exception as e:
            logger.warning("Upload of %s failed: %s", key, e)
            return Skipped(f"Upload failed: {e}")

        logger.info("Uploaded %s (%d bytes)", key, size)
        return Uploaded(url=url, size_bytes=size, key=key, expires_at=time.time() + RETENTION_SECONDS)

    def purge_expired(self, now: Optional[float] = None) -> PurgeSummary:
        started = time.time()
        now = started if now is None else now
        cutoff = now - RETENTION_SECONDS
        summary = PurgeSummary(cutoff=cutoff)

        expired = [key for key, created in self.list_objects() if created < cutoff]
        summary.total_found = len(expired)

        for i in range(0, len(expired), DELETE_BATCH_SIZE):
            batch = expired[i:i + DELETE_BATCH_SIZE]
            try:
                self.delete(batch)
            except Exception as e:
                logger.warning("Failed to delete batch of %d: %s", len(batch), e)
                summary.details.append({"success": False, "error": str(e), "batch": batch})
                continue
            summary.deleted_count += len(batch)
            summary.details.append({"success": True, "count": len(batch), "batch": batch})

        summary.execution_time_ms = int((time.time() - started) * 1000)
        logger.info("Purged %d of %d expired objects", summary.deleted_count, summary.total_found)
        return summary


class DisabledBlobStore(BlobStore):
    name = "none"

    def upload_if_eligible(self, data: bytes, suggested_name: str, original_name: Optional[str] = None) -> UploadOutcome:
        return Skipped("Cloud storage is not configured")

    def put(self, key: str, data: bytes, content_type: str) -> str:
        raise RuntimeError("Cloud storage is not configured")

    def signed_url(self, key: str, expires_in: int = RETENTION_SECONDS) -> str:
        raise KeyError(key)

    def list_objects(self) -> List[Tuple[str, float]]:
        return []

    def delete(self, keys: List[str]) -> None:
        return None


class MemoryBlobStore(BlobStore):
    """Process-local store for development and tests."""

    name = "memory"

    def __init__(self, base_url: str = "memory://processed-files", clock=time.time):
        self.base_url = base_url.rstrip("/")
        self.clock = clock
        self.objects: Dict[str, Tuple[bytes, str, float]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self.objects[key] = (bytes(data), content_type, self.clock())
        return f"{self.base_url}/{key}"

    def signed_url(self, key: str, expires_in: int = RETENTION_SECONDS) -> str:
        if key not in self.objects:
            raise KeyError(key)
        return f"{self.base_url}/{key}?expires={int(self.clock()) + expires_in}"

    def list_objects(self) -> List[Tuple[str, float]]:
        with self._lock:
            return [(key, created) for key, (_, _, created) in self.objects.items()]

    def delete(self, keys: List[str]) -> None:
        with self._lock:
            for key in keys:
                self.objects.pop(key, None)


def _parse_ts(value: str) -> Optional[float]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except (AttributeError, ValueError):
        return None


class SupabaseBlobStore(BlobStore):
    """Supabase Storage over its REST API."""

    name = "supabase"

    def __init__(self, url: str, key: str, bucket: str = "processed-files", client: Optional[httpx.Client] = None):
        self.url = url.rstrip("/")
        self.bucket = bucket
        self.client = client or httpx.Client(timeout=30)
        self.headers = {"Authorization": f"Bearer {key}", "apikey": key}

    def _object_url(self, key: str) -> str:
        return f"{self.url}/storage/v1/object/{self.bucket}/{quote(key)}"

    def _check(self, r: httpx.Response) -> httpx.Response:
        if r.status_code >= 400:
            try:
                message = r.json().get("message") or r.text
            except ValueError:
                message = r.text
            raise RuntimeError(f"Storage error {r.status_code}: {message}")
        return r

    def put(self, key: str, data: bytes, content_type: str) -> str:
        r = self.client.post(
            self._object_url(key),
            content=data,
            headers={
                **self.headers,
                "Content-Type": content_type,
                "Cache-Control": "max-age=3600",
                "x-upsert": "true",
            },
        )
        self._check(r)
        return f"{self.url}/storage/v1/object/public/{self.bucket}/{quote(key)}"

    def signed_url(self, key: str, expires_in: int = RETENTION_SECONDS) -> str:
        r = self.client.post(
            f"{self.url}/storage/v1/object/sign/{self.bucket}/{quote(key)}",
            json={"expiresIn": expires_in},
            headers=self.headers,
        )
        if r.status_code in (400, 404):
            raise KeyError(key)
        signed = self._check(r).json().get("signedURL")
        if not signed:
            raise KeyError(key)
        return f"{self.url}/storage/v1{signed}"

    def _list(self, prefix: str) -> List[dict]:
        r = self.client.post(
            f"{self.url}/storage/v1/object/list/{self.bucket}",
            json={
                "prefix": prefix,
                "limit": 1000,
                "offset": 0,
                "sortBy": {"column": "created_at", "order": "asc"},
            },
            headers=self.headers,
        )
        return self._check(r).json() or []

    def list_objects(self) -> List[Tuple[str, float]]:
        out = []
        for folder in self._list(""):
            # folders come back without an id
            if folder.get("id") is not None:
                continue
            try:
                entries = self._list(folder["name"])
            except RuntimeError as e:
                logger.warning("Failed to list folder %s: %s", folder.get("name"), e)
                continue
            for entry in entries:
                created = _parse_ts(entry.get("created_at") or "")
                if created is None:
                    continue
                out.append((f"{folder['name']}/{entry['name']}", created))
        return out

    def delete(self, keys: List[str]) -> None:
        r = self.client.request(
            "DELETE",
            f"{self.url}/storage/v1/object/{self.bucket}",
            json={"prefixes": keys},
            headers=self.headers,
        )
        self._check(r)


def build_blob_store(settings: Settings) -> BlobStore:
    mode = settings.blob_store
    configured = bool(settings.supabase_url and settings.supabase_key)
    if mode == "supabase" or (mode == "auto" and configured):
        if not configured:
            logger.warning("BLOB_STORE=supabase but SUPABASE_URL/SUPABASE_SERVICE_KEY are missing")
            return DisabledBlobStore()
        return SupabaseBlobStore(settings.supabase_url, settings.supabase_key, settings.storage_bucket)
    if mode == "memory":
        return MemoryBlobStore()
    return DisabledBlobStore()

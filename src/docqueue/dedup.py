"""Content-addressed artifact cache used to skip redundant renders.

Artifacts rendered for a caller-supplied logical identifier live at a key
derived only from (namespace, job type, identifier), so a second request for
the same document finds the first render with a metadata-only lookup.

Key format:
    <namespace>/<type>/<sanitized-id>-<sha256(id)[:12]>.<ext>

The sanitized part keeps keys readable and path-safe; the digest suffix keeps
identifiers that sanitize to the same string (``a-b`` / ``a_b``) apart.
"""

import hashlib
import logging
import re
import time
import uuid
from typing import Optional

from pydantic import BaseModel, Field

from .config import CacheConfig
from .storage import ObjectStore

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9]")


def sanitize(value: str) -> str:
    """Replace every character outside [A-Za-z0-9] with an underscore."""
    return _UNSAFE.sub("_", value)


def compute_id_hash(logical_id: str) -> str:
    """SHA-256 hex digest of a logical identifier."""
    return hashlib.sha256(logical_id.encode("utf-8")).hexdigest()


class CacheCheck(BaseModel):
    """Result of an existence check."""

    found: bool = Field(..., description="An artifact exists for the identifier")
    url: Optional[str] = Field(default=None, description="Public URL when found")
    key: Optional[str] = Field(default=None, description="Object key when found")


class StoredArtifact(BaseModel):
    """Location of an uploaded artifact."""

    url: str
    key: str


class DedupCache:
    """Deterministic artifact keys on top of an object store."""

    def __init__(
        self,
        object_store: ObjectStore,
        namespace: str = "pdfs",
        extension: str = "pdf",
        content_type: str = "application/pdf",
    ):
        self.object_store = object_store
        self.namespace = namespace
        self.extension = extension
        self.content_type = content_type

    @classmethod
    def from_config(cls, object_store: ObjectStore, config: CacheConfig) -> "DedupCache":
        return cls(
            object_store,
            namespace=config.namespace,
            extension=config.extension,
            content_type=config.content_type,
        )

    def build_key(self, logical_id: str, job_type: str, namespace: Optional[str] = None) -> str:
        """Deterministic object key for (logical_id, job_type).

        Same inputs always produce the same key.
        """
        namespace = namespace or self.namespace
        digest = compute_id_hash(str(logical_id))[:12]
        return (
            f"{namespace}/{sanitize(job_type.lower())}/"
            f"{sanitize(str(logical_id))}-{digest}.{self.extension}"
        )

    def exists(
        self, logical_id: str, job_type: str, namespace: Optional[str] = None
    ) -> CacheCheck:
        """Look up a previously rendered artifact in the object store.

        Any error is reported as a miss: deduplication is an optimization and
        a failed lookup must fall through to rendering.
        """
        key = self.build_key(logical_id, job_type, namespace)
        try:
            found = self.object_store.exists(key)
        except Exception as e:
            logger.warning("Cache check failed for %s, treating as miss: %s", key, e)
            return CacheCheck(found=False)

        if not found:
            return CacheCheck(found=False)
        return CacheCheck(found=True, url=self.object_store.url_for(key), key=key)

    def store(
        self,
        data: bytes,
        display_name: str,
        namespace: Optional[str] = None,
        logical_id: Optional[str] = None,
        job_type: Optional[str] = None,
    ) -> StoredArtifact:
        """Upload an artifact.

        With both logical_id and job_type the deterministic key is used and any
        earlier artifact for that identifier is overwritten (last render wins).
        Otherwise a fresh unique key is generated.

        Raises:
            ObjectStoreError: If the upload fails
        """
        namespace = namespace or self.namespace
        if logical_id and job_type:
            key = self.build_key(logical_id, job_type, namespace)
        else:
            stamp = int(time.time() * 1000)
            key = (
                f"{namespace}/{stamp}-{uuid.uuid4().hex[:8]}-"
                f"{sanitize(display_name)}.{self.extension}"
            )

        self.object_store.put(
            key,
            data,
            content_type=self.content_type,
            download_name=f"{display_name}.{self.extension}",
        )
        url = self.object_store.url_for(key)
        logger.debug("Stored artifact %s (%d bytes)", key, len(data))
        return StoredArtifact(url=url, key=key)

    def fetch(self, key: str) -> bytes:
        """Download a stored artifact by key."""
        return self.object_store.get(key)

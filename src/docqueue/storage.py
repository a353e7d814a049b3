"""Object stores for rendered artifacts.

``S3ObjectStore`` talks to S3 (or any S3-compatible endpoint) through boto3.
``LocalObjectStore`` keeps artifacts in a directory and is what development
setups and the test suite use.
"""

import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import CacheConfig
from .errors import ObjectStoreError


class ObjectStore(ABC):
    """Byte blobs addressed by a path-like key, with stable public URLs."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Metadata-only existence check.

        Returns False when the object is missing; raises ObjectStoreError for
        anything that is not a clean "not found".
        """
        pass

    @abstractmethod
    def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        download_name: Optional[str] = None,
    ) -> None:
        """Write data at key, replacing any previous object."""
        pass

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read the object stored at key."""
        pass

    @abstractmethod
    def url_for(self, key: str) -> str:
        """Public URL for key."""
        pass


class LocalObjectStore(ObjectStore):
    """Directory-backed object store."""

    def __init__(self, root: str, public_base_url: Optional[str] = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise ObjectStoreError(f"Key escapes storage root: {key}")
        return path

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def put(self, key, data, content_type="application/octet-stream", download_name=None):
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write then rename so readers never see a partial artifact
            tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
        except OSError as e:
            raise ObjectStoreError(f"Failed to store {key}: {e}") from e

    def get(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as e:
            raise ObjectStoreError(f"Failed to read {key}: {e}") from e

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return self._path(key).as_uri()


class S3ObjectStore(ObjectStore):
    """S3 bucket accessed with boto3."""

    def __init__(
        self,
        bucket: str,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        if client is None:
            # Force v4 signing so presigned/regional endpoints behave the same
            cfg = Config(signature_version="s3v4", region_name=region)
            client = boto3.client(
                "s3", region_name=region, endpoint_url=endpoint_url, config=cfg
            )
        self.s3 = client

    def exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if code in ("404", "NoSuchKey", "NotFound") or status == 404:
                return False
            raise ObjectStoreError(f"S3 head error for {key}: {code}") from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"S3 head error for {key}: {e}") from e

    def put(self, key, data, content_type="application/octet-stream", download_name=None):
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if download_name:
            params["ContentDisposition"] = f'attachment; filename="{download_name}"'
        try:
            self.s3.put_object(**params)
        except (ClientError, BotoCoreError) as e:
            raise ObjectStoreError(f"Failed to upload {key} to S3: {e}") from e

    def get(self, key: str) -> bytes:
        try:
            resp = self.s3.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise ObjectStoreError(f"Failed to download {key} from S3: {e}") from e

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"


def build_object_store(config: CacheConfig) -> ObjectStore:
    """Create the object store selected by config."""
    if config.backend == "s3":
        if not config.s3_bucket:
            raise ValueError("cache.s3_bucket is required for the s3 backend")
        return S3ObjectStore(
            bucket=config.s3_bucket,
            region=config.s3_region,
            endpoint_url=config.s3_endpoint_url,
            public_base_url=config.public_base_url,
        )
    return LocalObjectStore(config.local_root, public_base_url=config.public_base_url)

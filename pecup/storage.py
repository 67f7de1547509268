"""
Storage abstraction for Supabase Storage (S3-compatible) and in-memory testing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError


class StorageError(Exception):
    """Raised when the object store rejects or fails a request."""


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    bucket: str

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        ...

    def get_bytes(self, path: str) -> bytes:
        ...

    def delete(self, path: str) -> None:
        ...

    def public_url(self, path: str) -> str:
        ...


def public_object_url(base_url: str, bucket: str, path: str) -> str:
    """URL shape served by Supabase for public buckets."""
    return f"{base_url.rstrip('/')}/object/public/{bucket}/{path}"


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    bucket: str = "resources"
    base_url: str = "https://example.test/storage/v1"
    stored_objects: dict = None
    content_types: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}
        if self.content_types is None:
            self.content_types = {}

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        self.stored_objects[path] = bytes(data)
        self.content_types[path] = content_type

    def get_bytes(self, path: str) -> bytes:
        stored = self.stored_objects.get(path)
        if stored is None:
            raise FileNotFoundError(path)
        return stored

    def delete(self, path: str) -> None:
        if path not in self.stored_objects:
            raise FileNotFoundError(path)
        del self.stored_objects[path]
        self.content_types.pop(path, None)

    def public_url(self, path: str) -> str:
        return public_object_url(self.base_url, self.bucket, path)

    def reset(self) -> None:
        self.stored_objects.clear()
        self.content_types.clear()


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client for Supabase Storage.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        # Supabase's S3 gateway expects path-style addressing.
        config = Config(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type or "application/octet-stream",
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Upload of {path} failed: {exc}") from exc

    def get_bytes(self, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
        except self._client.exceptions.NoSuchKey as exc:
            raise FileNotFoundError(path) from exc
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Download of {path} failed: {exc}") from exc
        return response["Body"].read()

    def delete(self, path: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Delete of {path} failed: {exc}") from exc

    def public_url(self, path: str) -> str:
        base = self.public_base_url or self.endpoint.rsplit("/s3", 1)[0]
        return public_object_url(base, self.bucket, path)

"""Object store contract with filesystem and S3 implementations."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from visreg.errors import StorageError, StorageNotFound
from visreg.models.config import StorageConfig

logger = logging.getLogger(__name__)

# Error codes S3 (and S3-compatible services) use for a missing object
NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}


@runtime_checkable
class ObjectStore(Protocol):
    def get_object(self, bucket: str, key: str) -> bytes: ...

    def put_object(self, bucket: str, key: str, data: bytes) -> None: ...


class LocalObjectStore:
    """Buckets are directories under `root`; keys are relative file paths."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, bucket: str, key: str) -> Path:
        path = (self.root / bucket / key).resolve()
        bucket_root = (self.root / bucket).resolve()
        if bucket_root != path and bucket_root not in path.parents:
            raise StorageError(f"Key escapes bucket: {bucket}/{key}")
        return path

    def get_object(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        if not path.is_file():
            raise StorageNotFound(bucket, key)
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read {bucket}/{key}: {e}") from e

    def put_object(self, bucket: str, key: str, data: bytes) -> None:
        path = self._path(bucket, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise StorageError(f"Failed to write {bucket}/{key}: {e}") from e
        logger.debug("Stored %d bytes at %s/%s", len(data), bucket, key)


class S3ObjectStore:
    """Amazon S3 (or an S3-compatible service) through a boto3 client.

    Credentials come from the usual boto3 chain: environment, shared config
    or instance role.
    """

    def __init__(
        self,
        client: Any | None = None,
        region_name: str | None = None,
        endpoint_url: str | None = None,
    ):
        self.client = client or boto3.client(
            "s3", region_name=region_name, endpoint_url=endpoint_url,
        )

    def get_object(self, bucket: str, key: str) -> bytes:
        logger.debug("Downloading s3://%s/%s", bucket, key)
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in NOT_FOUND_CODES:
                raise StorageNotFound(bucket, key) from e
            raise StorageError(f"Failed to read s3://{bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to read s3://{bucket}/{key}: {e}") from e

    def put_object(self, bucket: str, key: str, data: bytes) -> None:
        try:
            self.client.put_object(Bucket=bucket, Key=key, Body=data)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to write s3://{bucket}/{key}: {e}") from e
        logger.debug("Uploaded %d bytes to s3://%s/%s", len(data), bucket, key)


def object_store_for(storage: StorageConfig) -> ObjectStore:
    """Build the object store selected by the storage config."""
    if storage.backend == "s3":
        return S3ObjectStore(region_name=storage.region, endpoint_url=storage.endpoint_url)
    return LocalObjectStore(storage.root_dir)

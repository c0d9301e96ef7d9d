"""Artifact upload/download and manifest persistence on top of an ObjectStore."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from visreg.errors import ManifestError
from visreg.models.manifest import Manifest

from .object_store import ObjectStore

logger = logging.getLogger(__name__)


class ArtifactStore:
    """The narrow storage interface the capture pipeline talks to."""

    def __init__(self, store: ObjectStore):
        self.store = store

    def upload_artifact(self, local_path: Path, bucket: str, key: str) -> bool:
        """Upload a local file. Returns False (and uploads nothing) when it is absent."""
        local_path = Path(local_path)
        if not local_path.is_file():
            logger.debug("Skipping upload of missing file %s", local_path)
            return False
        self.store.put_object(bucket, key, local_path.read_bytes())
        logger.info("Uploaded %s -> %s/%s", local_path.name, bucket, key)
        return True

    def download_artifact(self, bucket: str, key: str, local_path: Path) -> Path:
        """Fetch an object to `local_path`. StorageNotFound propagates."""
        data = self.store.get_object(bucket, key)
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        with open(local_path, "wb") as f:
            f.write(data)
        logger.info("Downloaded %s/%s -> %s", bucket, key, local_path)
        return local_path

    def read_manifest(self, bucket: str, key: str) -> Manifest:
        data = self.store.get_object(bucket, key)
        try:
            return Manifest(**json.loads(data))
        except (ValueError, ValidationError) as e:
            raise ManifestError(f"Invalid manifest at {bucket}/{key}: {e}") from e

    def write_manifest(self, manifest: Manifest, bucket: str, key: str) -> None:
        payload = json.dumps(manifest.to_json_dict(), indent=2).encode()
        self.store.put_object(bucket, key, payload)
        logger.info("Uploaded manifest to %s/%s", bucket, key)

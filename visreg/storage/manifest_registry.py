"""Manifest registry — maps storage paths to baseline object keys per build."""

from __future__ import annotations

import json
import logging
import time
import uuid
from pathlib import Path, PurePosixPath
from typing import Optional

from visreg.errors import StorageNotFound
from visreg.models.config import RunOptions, StorageConfig
from visreg.models.manifest import BuildEntry, Manifest, ScreenshotMapping

from .artifacts import ArtifactStore

logger = logging.getLogger(__name__)


def new_object_key(storage_path: str, suffix: str = ".png") -> str:
    """A fresh, unique object key next to the storage path."""
    parent = PurePosixPath(storage_path).parent
    return str(parent / f"{uuid.uuid4().hex}{suffix}")


class ManifestRegistry:
    """Loads, queries, updates and persists the baseline manifest for one run."""

    def __init__(
        self,
        storage: StorageConfig,
        options: RunOptions,
        local_path: Path,
        artifacts: Optional[ArtifactStore] = None,
    ):
        self.storage = storage
        self.options = options
        self.local_path = Path(local_path)
        self.artifacts = artifacts
        self.manifest = Manifest()

    @property
    def upload_tag(self) -> str:
        if self.options.upload_develop_build_tag:
            return self.storage.develop_build_tag
        return self.storage.feature_build_tag

    @property
    def tags_agree(self) -> bool:
        """Download and upload target the same kind of build."""
        return self.options.download_develop_build_tag == self.options.upload_develop_build_tag

    def load(self) -> Manifest:
        """Fetch the manifest from the store, or start a fresh one."""
        manifest: Optional[Manifest] = None
        if self.artifacts is not None and self.options.storage_enabled:
            try:
                manifest = self.artifacts.read_manifest(self.storage.bucket, self.storage.manifest_key)
                logger.info("Loaded manifest with %d build(s)", len(manifest.manifest))
            except StorageNotFound:
                logger.info("No manifest in store, creating a new one")
        if manifest is None:
            manifest = Manifest(manifest=[self._new_build()])
        self.manifest = manifest
        self.save()
        return manifest

    def save(self) -> None:
        """Persist the manifest next to the run's results."""
        self.local_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.local_path, "w") as f:
            json.dump(self.manifest.to_json_dict(), f, indent=2)
        logger.debug("Saved manifest to %s", self.local_path)

    def upload(self) -> bool:
        if self.artifacts is None or not (self.options.upload or self.options.upload_on_mismatch):
            return False
        self.artifacts.write_manifest(self.manifest, self.storage.bucket, self.storage.manifest_key)
        return True

    def find_download(self, storage_path: str) -> Optional[tuple[str, str]]:
        """(baseline_key, bucket) to download for `storage_path`, if any.

        Develop-tag downloads take the newest develop build; otherwise only
        the current build key is considered.
        """
        found: Optional[tuple[str, str]] = None
        for build in self.manifest.manifest:
            if self.options.download_develop_build_tag:
                if build.build_tag != self.storage.develop_build_tag:
                    continue
            elif build.build_key != self.options.build_key:
                continue
            mapping = self._mapping(build, storage_path)
            if mapping is not None:
                found = (mapping.baseline_key, build.store_bucket or self.storage.bucket)
        return found

    def upload_key(self, storage_path: str) -> str:
        """Key the current build already uses for `storage_path`, or a new one."""
        build = self._upload_build(create=False)
        if build is not None:
            mapping = self._mapping(build, storage_path)
            if mapping is not None:
                return mapping.baseline_key
        return new_object_key(storage_path)

    def record_mapping(self, storage_path: str, baseline_key: str) -> bool:
        """Point `storage_path` at `baseline_key` in the upload build.

        Returns True when the manifest changed. Recording the same pair twice
        is a no-op.
        """
        build = self._upload_build(create=True)
        mapping = self._mapping(build, storage_path)
        if mapping is not None:
            if mapping.baseline_key == baseline_key:
                return False
            logger.debug("Replacing baseline for %s: %s -> %s",
                         storage_path, mapping.baseline_key, baseline_key)
            mapping.baseline_key = baseline_key
        else:
            build.screenshots.append(
                ScreenshotMapping(storage_path=storage_path, baseline_key=baseline_key)
            )
        self.save()
        return True

    def _upload_build(self, create: bool) -> Optional[BuildEntry]:
        for build in self.manifest.manifest:
            if build.build_key == self.options.build_key:
                return build
        if self.options.upload_develop_build_tag:
            develop = [b for b in self.manifest.manifest if b.build_tag == self.storage.develop_build_tag]
            if develop:
                return develop[-1]
        if not create:
            return None
        build = self._new_build()
        self.manifest.manifest.append(build)
        return build

    def _new_build(self) -> BuildEntry:
        return BuildEntry(
            build_key=self.options.build_key,
            build_tag=self.upload_tag,
            store_bucket=self.storage.bucket,
            created_date=time.strftime("%Y-%m-%dT%H:%M:%SZ"),
        )

    @staticmethod
    def _mapping(build: BuildEntry, storage_path: str) -> Optional[ScreenshotMapping]:
        for mapping in build.screenshots:
            if mapping.storage_path == storage_path:
                return mapping
        return None

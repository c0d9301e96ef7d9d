"""Run orchestrator — selects tests and environments, wires storage, runs the executor."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Optional

from visreg.executor.executor import TestExecutor
from visreg.executor.session import SessionLifecycle
from visreg.executor.tunnel import TunnelManager, grid_tunnel_probe
from visreg.models.config import EnvironmentConfig, FrameworkConfig, RunOptions, TestCaseConfig
from visreg.models.test_result import RunSummary
from visreg.reporter.result_log import ResultLogWriter
from visreg.storage.artifacts import ArtifactStore
from visreg.storage.manifest_registry import ManifestRegistry
from visreg.storage.object_store import ObjectStore, object_store_for
from visreg.utils.browser import grid_credentials

logger = logging.getLogger(__name__)


class Orchestrator:
    """Coordinates one visual regression run."""

    def __init__(
        self,
        config: FrameworkConfig,
        options: RunOptions | None = None,
        store: ObjectStore | None = None,
        lifecycle: SessionLifecycle | None = None,
    ):
        self.config = config
        self.options = options or RunOptions()
        self.results_dir = Path(config.paths.results_dir)

        self.artifacts: ArtifactStore | None = None
        if self.options.storage_enabled:
            self.artifacts = ArtifactStore(store or object_store_for(config.storage))

        self.registry = ManifestRegistry(
            config.storage, self.options, self.results_dir / "manifest.json", self.artifacts,
        )
        self.result_log = ResultLogWriter(self.results_dir / "result.json")
        self.tunnel: TunnelManager | None = None
        self.lifecycle = lifecycle

    def select_tests(self, names: Optional[list[str]] = None) -> list[tuple[str, TestCaseConfig]]:
        """Tests matching `group`, `label` or `group/label` (case-insensitive)."""
        wanted = {n.lower() for n in names or []}
        selected = []
        for group, tests in self.config.tests.items():
            for test in tests:
                keys = {group.lower(), test.label.lower(), f"{group}/{test.label}".lower()}
                if not wanted or wanted & keys:
                    selected.append((group, test))
        if not selected:
            raise ValueError(f"No tests match {sorted(wanted)}" if wanted else "No tests configured")
        return selected

    def select_environments(self, labels: Optional[list[str]] = None) -> list[EnvironmentConfig]:
        if not labels:
            return list(self.config.environments)
        selected = []
        for label in labels:
            env = self.config.environment(label)
            if env is None:
                raise ValueError(f"Unknown environment: {label}")
            selected.append(env)
        return selected

    def needs_tunnel(self, environments: list[EnvironmentConfig]) -> bool:
        return any(
            not env.headless and (self.options.use_tunnel or env.local) for env in environments
        )

    def run(
        self,
        names: Optional[list[str]] = None,
        env_labels: Optional[list[str]] = None,
    ) -> RunSummary:
        return asyncio.run(self._run(names, env_labels))

    async def _run(
        self,
        names: Optional[list[str]],
        env_labels: Optional[list[str]],
    ) -> RunSummary:
        started_at = time.strftime("%Y-%m-%dT%H:%M:%SZ")
        start = time.time()
        tests = self.select_tests(names)
        environments = self.select_environments(env_labels)
        logger.info("=== Visual regression run %s: %d tests x %d environments ===",
                    self.options.build_key, len(tests), len(environments))

        self.registry.load()
        self.result_log.initialize(
            name=self.options.build_key,
            store_base_url=self.config.storage.base_url,
            store_build_bucket=self.config.storage.bucket,
            base_url=self.config.base_url,
        )

        if self.needs_tunnel(environments):
            self.tunnel = self._create_tunnel()
            await self.tunnel.wait_until_ready()

        lifecycle = self.lifecycle or SessionLifecycle(self.config.headless, self.tunnel)
        executor = TestExecutor(
            self.config,
            self.options,
            lifecycle,
            artifacts=self.artifacts,
            registry=self.registry,
            result_log=self.result_log,
        )
        results = await executor.run_all(tests, environments)

        if self.registry.upload():
            logger.info("Manifest uploaded for build %s", self.options.build_key)
        if self.options.archive:
            self.archive_captures()

        duration = time.time() - start
        summary = RunSummary.from_results(
            self.options.build_key, started_at, time.strftime("%Y-%m-%dT%H:%M:%SZ"),
            results, duration,
        )
        self._save_summary(summary)
        logger.info("=== Run complete in %.1fs: %d matched, %d mismatched, %d baselines, %d errors ===",
                    duration, summary.matched, summary.mismatched, summary.baselines, summary.errors)
        return summary

    def archive_captures(self) -> Path | None:
        """Zip the working captures into the results directory."""
        working = Path(self.config.paths.working_dir)
        if not working.exists():
            logger.warning("Nothing to archive: %s does not exist", working)
            return None
        base = self.results_dir / f"screenshots-{self.options.build_key}"
        archive = shutil.make_archive(str(base), "zip", root_dir=working)
        logger.info("Archived captures to %s", archive)
        return Path(archive)

    def _create_tunnel(self) -> TunnelManager:
        identifier = os.environ.get("BROWSERSTACK_LOCAL_IDENTIFIER") or None
        if identifier is None:
            logger.info("BROWSERSTACK_LOCAL_IDENTIFIER not set; waiting for any running tunnel")
        tunnel = TunnelManager(local_identifier=identifier)
        credentials = grid_credentials()
        if credentials is not None:
            tunnel.probe = grid_tunnel_probe(credentials[1], tunnel.local_identifier)
        return tunnel

    def _save_summary(self, summary: RunSummary) -> None:
        self.results_dir.mkdir(parents=True, exist_ok=True)
        path = self.results_dir / "summary.json"
        with open(path, "w") as f:
            json.dump(summary.model_dump(mode="json"), f, indent=2, default=str)
        logger.debug("Saved run summary to %s", path)

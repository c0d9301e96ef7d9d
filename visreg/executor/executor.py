"""Test executor — runs the capture/compare pipeline for each (test, environment)."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

from visreg.errors import (
    CredentialsMissing,
    PageLoadTimeout,
    PageVerificationTimeout,
    StorageNotFound,
)
from visreg.imaging.comparison import ComparisonEngine
from visreg.models.capture import CaptureMode, CapturePaths, CaptureSession, Outcome, PipelineStage
from visreg.models.config import EnvironmentConfig, FrameworkConfig, RunOptions, TestCaseConfig
from visreg.models.test_result import ResultImages, ResultRecord, TestResult
from visreg.reporter.result_log import ResultLogWriter
from visreg.resolution import (
    resolve_crop,
    resolve_headless,
    resolve_max_scroll,
    resolve_optimize,
    resolve_require_scroll,
    resolve_screenshot_delay,
    resolve_tolerance,
    resolve_wait_after_scroll,
)
from visreg.storage.artifacts import ArtifactStore
from visreg.storage.manifest_registry import ManifestRegistry, new_object_key
from visreg.url_utils import render_endpoint, resolve_test_url

from .retry import fault_message, is_transient_fault, is_unreachable_node, retry_async
from .session import SessionLifecycle
from .stitcher import CaptureStitcher

logger = logging.getLogger(__name__)

# Titles the grid serves while the real page has not loaded yet
INVALID_TITLES = frozenset({"Page not found", "Cannot Open Page", "Failed to open page"})

NAVIGATION_RETRIES = 3
PIPELINE_RETRIES = 3


class TestExecutor:
    """Sequences session, baseline, page, capture, compare, upload and record.

    One instance serves a whole run; the session lifecycle carries the live
    browser from one test to the next within an environment.
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        config: FrameworkConfig,
        options: RunOptions,
        lifecycle: SessionLifecycle,
        stitcher: CaptureStitcher | None = None,
        engine: ComparisonEngine | None = None,
        artifacts: ArtifactStore | None = None,
        registry: ManifestRegistry | None = None,
        result_log: ResultLogWriter | None = None,
        page_load_timeout: float = 100.0,
        title_timeout: float = 60.0,
        poll_interval: float = 1.0,
    ):
        self.config = config
        self.options = options
        self.lifecycle = lifecycle
        self.stitcher = stitcher or CaptureStitcher()
        self.engine = engine or ComparisonEngine()
        self.artifacts = artifacts
        self.registry = registry
        self.result_log = result_log
        self.page_load_timeout = page_load_timeout
        self.title_timeout = title_timeout
        self.poll_interval = poll_interval

    async def run_all(
        self,
        tests: list[tuple[str, TestCaseConfig]],
        environments: list[EnvironmentConfig],
    ) -> list[TestResult]:
        """Run every test in every environment, one environment at a time."""
        results: list[TestResult] = []
        total = len(tests) * len(environments)
        try:
            for env in environments:
                logger.info("Environment %s (%d tests)", env.label, len(tests))
                for group, test in tests:
                    logger.info("Running test [%d/%d]: %s/%s on %s",
                                len(results) + 1, total, group, test.label, env.label)
                    results.append(await self.run_test(group, test, env))
                await self.lifecycle.release()
        finally:
            await self.lifecycle.shutdown()
        return results

    def build_session(
        self, group: str, test: TestCaseConfig, env: EnvironmentConfig,
    ) -> CaptureSession:
        """Resolve every layered setting into a fresh CaptureSession."""
        cfg = self.config
        paths = CapturePaths.build(
            Path(cfg.paths.baseline_dir), Path(cfg.paths.working_dir), Path(cfg.paths.diff_dir),
            group, test.label, env.label, cfg.defaults.prefix_image,
        )
        if paths.diff.exists():
            paths.diff.unlink()
            logger.debug("Removed stale diff %s", paths.diff)

        crop_top, crop_bottom = resolve_crop(env)
        return CaptureSession(
            group=group,
            test=test,
            environment=env,
            url=resolve_test_url(cfg.base_url, cfg.endpoint, group, test.label, test.path),
            paths=paths,
            tolerance=resolve_tolerance(test, env, cfg.defaults),
            max_scroll=resolve_max_scroll(test, env, cfg.defaults),
            require_scroll=resolve_require_scroll(test, env),
            optimize=resolve_optimize(test, cfg.defaults),
            crop_top=crop_top,
            crop_bottom=crop_bottom,
            screenshot_delay=resolve_screenshot_delay(test, env, cfg.defaults, cfg.headless),
            wait_after_scroll_ms=resolve_wait_after_scroll(env, cfg.defaults),
        )

    async def run_test(
        self, group: str, test: TestCaseConfig, env: EnvironmentConfig,
    ) -> TestResult:
        """Run one (test, environment) pair. Only CredentialsMissing escapes."""
        start = time.time()
        current = {"ctx": self.build_session(group, test, env)}

        async def attempt() -> CaptureSession:
            ctx = current["ctx"]
            if ctx.stage != PipelineStage.INIT:
                ctx = current["ctx"] = self.build_session(group, test, env)
            return await self._run_pipeline(ctx)

        async def drop_session(_: BaseException) -> None:
            await self.lifecycle.release()

        try:
            ctx = await retry_async(
                attempt,
                retries=PIPELINE_RETRIES,
                should_retry=is_unreachable_node,
                on_retry=drop_session,
                description=f"Test {group}/{test.label} on {env.label}",
            )
        except CredentialsMissing:
            raise
        except Exception as e:
            ctx = current["ctx"]
            failed_stage = ctx.stage
            ctx.stage = PipelineStage.FAILED
            ctx.outcome = Outcome.ERROR
            ctx.error = fault_message(e)
            logger.error("[ERROR] %s on %s at %s: %s",
                         ctx.test_id, env.label, failed_stage.value, ctx.error)
            await self.lifecycle.release()
            return self._to_result(ctx, start, failed_stage)

        logger.info("[%s] %s on %s (%.1fs)", ctx.outcome.value.upper(),
                    ctx.test_id, env.label, time.time() - start)
        return self._to_result(ctx, start)

    async def _run_pipeline(self, ctx: CaptureSession) -> CaptureSession:
        env = ctx.environment
        headless = resolve_headless(ctx.test, self.config.headless) if env.headless else None
        ctx.browser = await self.lifecycle.ensure(env, self.options.use_tunnel, headless)
        self._advance(ctx, PipelineStage.SESSION_READY)

        self.resolve_baseline(ctx)
        self._advance(ctx, PipelineStage.BASELINE_RESOLVED)

        await self.open_page(ctx)
        self._advance(ctx, PipelineStage.PAGE_OPENED)

        await self.stitcher.capture(ctx)
        self._advance(ctx, PipelineStage.CAPTURED)

        if ctx.mode == CaptureMode.COMPARE:
            self.engine.run(ctx)
        else:
            ctx.outcome = (
                Outcome.BASELINE_ESTABLISHED if self.options.update_baseline
                else Outcome.BASELINE_CREATED
            )
        self._advance(ctx, PipelineStage.COMPARED)

        self.upload_artifacts(ctx)
        self._advance(ctx, PipelineStage.ARTIFACTS_UPLOADED)

        self.write_record(ctx)
        self._advance(ctx, PipelineStage.RECORD_WRITTEN)

        self._advance(ctx, PipelineStage.DONE)
        return ctx

    def resolve_baseline(self, ctx: CaptureSession) -> None:
        """Decide between comparing and establishing a baseline."""
        if self.options.update_baseline:
            ctx.mode = CaptureMode.ESTABLISH
            return

        if self.options.download and self.registry is not None and self.artifacts is not None:
            ctx.mode = CaptureMode.ESTABLISH
            found = self.registry.find_download(ctx.paths.storage_path)
            if found is None:
                logger.info("[%s] No stored baseline for %s", ctx.test_id, ctx.paths.storage_path)
                return
            key, bucket = found
            try:
                self.artifacts.download_artifact(bucket, key, ctx.paths.baseline)
            except StorageNotFound:
                logger.warning("[%s] Baseline %s/%s is listed but missing", ctx.test_id, bucket, key)
                return
            ctx.baseline_key = key
            ctx.baseline_source_bucket = bucket
            ctx.baseline_downloaded = True
            ctx.mode = CaptureMode.COMPARE
            return

        ctx.mode = CaptureMode.COMPARE if ctx.paths.baseline.exists() else CaptureMode.ESTABLISH

    async def open_page(self, ctx: CaptureSession) -> None:
        """Navigate and verify the page, re-acquiring the session on known faults."""

        async def attempt() -> None:
            await ctx.browser.navigate(ctx.url)
            await self._wait_for_ready_state(ctx)
            await self._verify_title(ctx)

        async def refresh(_: BaseException) -> None:
            ctx.browser = await self.lifecycle.refresh(ctx.browser)

        await retry_async(
            attempt,
            retries=NAVIGATION_RETRIES,
            should_retry=is_transient_fault,
            on_retry=refresh,
            description=f"[{ctx.test_id}] Navigation",
        )

        if ctx.test.script:
            logger.debug("[%s] Running post-load script", ctx.test_id)
            await ctx.browser.execute_script(ctx.test.script)

    async def _wait_for_ready_state(self, ctx: CaptureSession) -> None:
        deadline = time.monotonic() + self.page_load_timeout
        while True:
            state = await ctx.browser.get_ready_state()
            if state == "complete":
                return
            if time.monotonic() >= deadline:
                raise PageLoadTimeout(
                    f"{ctx.url} not complete after {self.page_load_timeout:.0f}s (readyState={state})"
                )
            await asyncio.sleep(self.poll_interval)

    async def _verify_title(self, ctx: CaptureSession) -> None:
        deadline = time.monotonic() + self.title_timeout
        while True:
            try:
                title = await ctx.browser.get_title()
            except Exception as e:
                if is_transient_fault(e):
                    raise
                logger.debug("[%s] Title check failed: %s", ctx.test_id, e)
                title = ""
            if title and title not in INVALID_TITLES:
                logger.debug("[%s] Page title: %s", ctx.test_id, title)
                return
            if time.monotonic() >= deadline:
                raise PageVerificationTimeout(
                    f"{ctx.url} did not load a real page after {self.title_timeout:.0f}s (title={title!r})"
                )
            await asyncio.sleep(self.poll_interval)

    def upload_artifacts(self, ctx: CaptureSession) -> None:
        """Push the baseline or the mismatch evidence to object storage."""
        if self.artifacts is None or self.registry is None:
            return
        bucket = self.config.storage.bucket
        storage_path = ctx.paths.storage_path

        if ctx.outcome.is_baseline:
            if not self.options.upload or not self.registry.tags_agree:
                return
            key = self.registry.upload_key(storage_path)
            if self.artifacts.upload_artifact(ctx.paths.baseline, bucket, key):
                self.registry.record_mapping(storage_path, key)
                ctx.baseline_key = key
            return

        if ctx.outcome != Outcome.MISMATCHED or not self.options.upload_on_mismatch:
            return

        ctx.diff_key = new_object_key(storage_path, suffix=".jpg")
        self.artifacts.upload_artifact(ctx.paths.diff, bucket, ctx.diff_key)

        if self.registry.tags_agree:
            # The new capture takes over the baseline key; the old one is kept aside
            ctx.test_key = ctx.baseline_key or self.registry.upload_key(storage_path)
            ctx.base_key = new_object_key(storage_path)
            if self.artifacts.upload_artifact(ctx.paths.baseline, bucket, ctx.base_key):
                ctx.baseline_source_bucket = bucket
            if self.artifacts.upload_artifact(ctx.paths.working, bucket, ctx.test_key):
                self.registry.record_mapping(storage_path, ctx.test_key)
        else:
            ctx.test_key = new_object_key(storage_path)
            self.artifacts.upload_artifact(ctx.paths.working, bucket, ctx.test_key)
            if ctx.baseline_downloaded:
                ctx.base_key = ctx.baseline_key
            else:
                ctx.base_key = new_object_key(storage_path)
                if self.artifacts.upload_artifact(ctx.paths.baseline, bucket, ctx.base_key):
                    ctx.baseline_source_bucket = bucket

    def write_record(self, ctx: CaptureSession) -> None:
        """Append a regression record; matched and baseline runs are not recorded."""
        if self.result_log is None:
            return
        if ctx.outcome != Outcome.MISMATCHED or not self.options.upload_on_mismatch:
            return
        bucket = self.config.storage.bucket
        source_bucket = ctx.baseline_source_bucket or bucket
        uri = ctx.test.path if ctx.test.path is not None else render_endpoint(
            self.config.endpoint, ctx.group, ctx.test.label,
        )
        self.result_log.append(ResultRecord(
            test=ctx.test_id,
            uri=uri,
            result=ctx.outcome,
            mismatch_percentage=ctx.mismatch_percentage,
            mismatch_tolerance=ctx.tolerance,
            images=ResultImages(
                test=f"{bucket}/{ctx.test_key}" if ctx.test_key else "",
                diff=f"{bucket}/{ctx.diff_key}" if ctx.diff_key else "",
                baseline=f"{source_bucket}/{ctx.base_key}" if ctx.base_key else "",
            ),
        ))

    @staticmethod
    def _advance(ctx: CaptureSession, stage: PipelineStage) -> None:
        ctx.stage = stage
        logger.debug("[%s] %s -> %s", ctx.test_id, ctx.environment.label, stage.value)

    @staticmethod
    def _to_result(
        ctx: CaptureSession, start: float, failed_stage: Optional[PipelineStage] = None,
    ) -> TestResult:
        diff = ctx.paths.diff if ctx.outcome == Outcome.MISMATCHED and ctx.paths.diff.exists() else None
        return TestResult(
            test_id=ctx.test_id,
            environment=ctx.environment.label,
            url=ctx.url,
            result=ctx.outcome,
            mismatch_percentage=ctx.mismatch_percentage,
            mismatch_tolerance=ctx.tolerance,
            failed_stage=failed_stage.value if failed_stage else None,
            failure_reason=ctx.error,
            duration_seconds=round(time.time() - start, 2),
            capture_path=str(ctx.output_path) if ctx.output_path.exists() else None,
            diff_path=str(diff) if diff else None,
        )

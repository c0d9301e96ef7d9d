"""Tests for the per-test executor state machine."""

import json
from pathlib import Path

import pytest

from visreg.errors import CredentialsMissing, SessionFault
from visreg.executor.executor import TestExecutor
from visreg.executor.stitcher import CaptureStitcher
from visreg.imaging.image_store import load_image
from visreg.models.capture import Outcome
from visreg.models.config import EnvironmentConfig, RunOptions, TestCaseConfig
from visreg.models.manifest import BuildEntry, Manifest, ScreenshotMapping
from visreg.reporter.result_log import ResultLogWriter
from visreg.storage.artifacts import ArtifactStore
from visreg.storage.manifest_registry import ManifestRegistry
from visreg.storage.object_store import LocalObjectStore

UNREACHABLE = "Unable to communicate to node"
TRANSIENT = "Session not started or terminated"


def stored_files(root) -> list[Path]:
    root = Path(root)
    if not root.exists():
        return []
    return [p for p in root.rglob("*") if p.is_file()]


@pytest.fixture
def page(solid):
    return solid(100, 100)


@pytest.fixture
def make_executor(framework_config, tmp_path, fake_lifecycle_cls, page):
    def _make(options: RunOptions, faults=None, storage: bool = True):
        lifecycle = fake_lifecycle_cls(page, faults=faults)
        artifacts = ArtifactStore(LocalObjectStore(framework_config.storage.root_dir)) if storage else None
        registry = ManifestRegistry(
            framework_config.storage, options, tmp_path / "results" / "manifest.json", artifacts,
        )
        registry.load()
        result_log = ResultLogWriter(tmp_path / "results" / "result.json")
        result_log.initialize(options.build_key, store_build_bucket=framework_config.storage.bucket)
        executor = TestExecutor(
            framework_config,
            options,
            lifecycle,
            stitcher=CaptureStitcher(retry_delay=0),
            artifacts=artifacts,
            registry=registry,
            result_log=result_log,
            page_load_timeout=0.05,
            title_timeout=0.05,
            poll_interval=0,
        )
        return executor, lifecycle

    return _make


@pytest.fixture
def baseline_path(tmp_path) -> Path:
    return tmp_path / "baseline" / "pages" / "home" / "chrome.png"


def write_baseline(path: Path, image) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    image.save(path)


def logged_results(tmp_path) -> list[dict]:
    return json.loads((tmp_path / "results" / "result.json").read_text())["results"]


class TestBuildSession:

    def test_resolves_url_and_paths(self, make_executor, test_case, environment, tmp_path):
        executor, _ = make_executor(RunOptions())
        ctx = executor.build_session("pages", test_case, environment)
        assert ctx.url == "https://storybook.example.com/iframe.html?id=pages--home"
        assert ctx.paths.working == tmp_path / "test" / "pages" / "home" / "chrome.png"
        assert ctx.paths.diff == tmp_path / "diff" / "pages" / "home" / "chrome.jpg"
        assert ctx.paths.storage_path == "pages/home/chrome.png"
        assert ctx.tolerance == 1.0
        assert ctx.require_scroll is False

    def test_removes_stale_diff(self, make_executor, test_case, environment, tmp_path):
        stale = tmp_path / "diff" / "pages" / "home" / "chrome.jpg"
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b"old")
        executor, _ = make_executor(RunOptions())
        executor.build_session("pages", test_case, environment)
        assert not stale.exists()

    def test_explicit_path_overrides_endpoint(self, make_executor, environment):
        executor, _ = make_executor(RunOptions())
        ctx = executor.build_session("pages", TestCaseConfig(label="x", path="/custom"), environment)
        assert ctx.url == "https://storybook.example.com/custom"


class TestScenarios:

    @pytest.mark.asyncio
    async def test_first_run_creates_baseline(
        self, make_executor, test_case, environment, framework_config, baseline_path, tmp_path,
    ):
        executor, _ = make_executor(RunOptions(build_key="build-42", upload=True))

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.BASELINE_CREATED
        assert result.mismatch_percentage is None
        assert baseline_path.exists()
        assert not (tmp_path / "test" / "pages" / "home" / "chrome.png").exists()
        assert len(stored_files(framework_config.storage.root_dir)) == 1
        assert executor.registry.manifest.manifest[0].screenshots[0].storage_path == "pages/home/chrome.png"
        assert logged_results(tmp_path) == []

    @pytest.mark.asyncio
    async def test_exact_match(
        self, make_executor, test_case, environment, framework_config, baseline_path, page, tmp_path,
    ):
        write_baseline(baseline_path, page)
        executor, _ = make_executor(RunOptions(upload=True, upload_on_mismatch=True))

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.MATCHED
        assert result.mismatch_percentage == 0.0
        assert result.diff_path is None
        assert not (tmp_path / "diff" / "pages" / "home" / "chrome.jpg").exists()
        assert logged_results(tmp_path) == []
        assert stored_files(framework_config.storage.root_dir) == []

    @pytest.mark.asyncio
    async def test_mismatch_above_tolerance(
        self, make_executor, test_case, environment, framework_config, baseline_path, page, tmp_path,
    ):
        baseline = page.copy()
        baseline.paste((255, 0, 0), (0, 0, 100, 5))
        write_baseline(baseline_path, baseline)
        executor, _ = make_executor(RunOptions(upload_on_mismatch=True))

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.MISMATCHED
        assert result.mismatch_percentage == 5.0
        assert result.mismatch_tolerance == 1.0
        assert Path(result.diff_path).exists()

        records = logged_results(tmp_path)
        assert len(records) == 1
        record = records[0]
        assert record["test"] == "pages/home"
        assert record["uri"] == "/iframe.html?id=pages--home"
        assert record["result"] == "mismatched"
        images = record["images"]
        assert images["test"].startswith("builds/pages/home/")
        assert images["diff"].startswith("builds/pages/home/") and images["diff"].endswith(".jpg")
        assert images["baseline"].startswith("builds/pages/home/")
        assert len({images["test"], images["diff"], images["baseline"]}) == 3
        assert len(stored_files(framework_config.storage.root_dir)) == 3

    @pytest.mark.asyncio
    async def test_mismatch_without_upload_is_not_recorded(
        self, make_executor, test_case, environment, baseline_path, solid, tmp_path,
    ):
        write_baseline(baseline_path, solid(100, 100, (0, 0, 0)))
        executor, _ = make_executor(RunOptions())

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.MISMATCHED
        assert logged_results(tmp_path) == []

    @pytest.mark.asyncio
    async def test_transient_fault_then_success(self, make_executor, test_case, environment):
        faults = [SessionFault(TRANSIENT), SessionFault(TRANSIENT)]
        executor, lifecycle = make_executor(RunOptions(), faults=faults)

        result = await executor.run_test("pages", test_case, environment)

        assert result.result != Outcome.ERROR
        assert result.result == Outcome.BASELINE_CREATED
        assert lifecycle.refreshed == 2
        assert faults == []


class TestBaselineResolution:

    @pytest.mark.asyncio
    async def test_update_flag_establishes(self, make_executor, test_case, environment, baseline_path, solid):
        write_baseline(baseline_path, solid(100, 100, (0, 0, 0)))
        executor, _ = make_executor(RunOptions(update_baseline=True))

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.BASELINE_ESTABLISHED
        assert load_image(baseline_path).getpixel((0, 0)) == (255, 255, 255)

    @pytest.mark.asyncio
    async def test_downloads_baseline_from_store(
        self, make_executor, test_case, environment, framework_config, baseline_path, page, tmp_path,
    ):
        key = "pages/home/0123abcd.png"
        source = tmp_path / "remote.png"
        page.save(source)
        LocalObjectStore(framework_config.storage.root_dir).put_object("builds", key, source.read_bytes())
        options = RunOptions(build_key="build-42", download=True)
        executor, _ = make_executor(options)
        executor.registry.manifest = Manifest(manifest=[BuildEntry(
            build_key="build-42", store_bucket="builds", created_date="2024-01-01T00:00:00Z",
            screenshots=[ScreenshotMapping(storage_path="pages/home/chrome.png", baseline_key=key)],
        )])

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.MATCHED
        assert baseline_path.read_bytes() == source.read_bytes()

    @pytest.mark.asyncio
    async def test_missing_remote_baseline_falls_back_to_establish(
        self, make_executor, test_case, environment, baseline_path, solid,
    ):
        write_baseline(baseline_path, solid(100, 100, (0, 0, 0)))
        executor, _ = make_executor(RunOptions(download=True))
        executor.registry.manifest = Manifest(manifest=[BuildEntry(
            build_key="default", store_bucket="builds", created_date="x",
            screenshots=[ScreenshotMapping(storage_path="pages/home/chrome.png", baseline_key="gone.png")],
        )])

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.BASELINE_CREATED


class TestFailures:

    @pytest.mark.asyncio
    async def test_unknown_fault_is_error(self, make_executor, test_case, environment):
        executor, lifecycle = make_executor(RunOptions(), faults=[SessionFault("element is detached")])

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.ERROR
        assert result.failed_stage == "baseline_resolved"
        assert "detached" in result.failure_reason
        assert lifecycle.refreshed == 0
        assert lifecycle.session is None

    @pytest.mark.asyncio
    async def test_unreachable_node_retries_whole_pipeline(self, make_executor, test_case, environment):
        faults = [SessionFault(UNREACHABLE)] * 5
        executor, lifecycle = make_executor(RunOptions(), faults=faults)

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.BASELINE_CREATED
        assert faults == []

    @pytest.mark.asyncio
    async def test_unreachable_node_budget_exhausted(self, make_executor, test_case, environment):
        faults = [SessionFault(UNREACHABLE)] * 20
        executor, _ = make_executor(RunOptions(), faults=faults)

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.ERROR
        # 4 pipeline attempts x 4 navigation attempts
        assert len(faults) == 4

    @pytest.mark.asyncio
    async def test_page_never_completes(self, make_executor, test_case, environment):
        executor, lifecycle = make_executor(RunOptions())
        lifecycle.session_kwargs = {"ready_state": "loading"}

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.ERROR
        assert "not complete" in result.failure_reason
        assert lifecycle.refreshed == 0

    @pytest.mark.asyncio
    async def test_grid_error_page_fails_verification(self, make_executor, test_case, environment):
        executor, lifecycle = make_executor(RunOptions())
        lifecycle.session_kwargs = {"title": "Cannot Open Page"}

        result = await executor.run_test("pages", test_case, environment)

        assert result.result == Outcome.ERROR
        assert "real page" in result.failure_reason

    @pytest.mark.asyncio
    async def test_missing_credentials_stop_the_run(self, make_executor, test_case, environment):
        executor, lifecycle = make_executor(RunOptions())
        lifecycle.acquire_error = CredentialsMissing("no credentials")

        with pytest.raises(CredentialsMissing):
            await executor.run_test("pages", test_case, environment)


class TestRunAll:

    @pytest.mark.asyncio
    async def test_session_reused_within_environment(self, make_executor, environment):
        executor, lifecycle = make_executor(RunOptions())
        tests = [("pages", TestCaseConfig(label="home")), ("pages", TestCaseConfig(label="about"))]

        results = await executor.run_all(tests, [environment])

        assert [r.result for r in results] == [Outcome.BASELINE_CREATED] * 2
        assert lifecycle.acquired == 1
        assert lifecycle.shut_down is True
        assert lifecycle.sessions[0].closed is True

    @pytest.mark.asyncio
    async def test_new_session_per_environment(self, make_executor, environment):
        executor, lifecycle = make_executor(RunOptions())
        other = EnvironmentConfig(label="firefox", browser_name="firefox", require_scroll=False)
        tests = [("pages", TestCaseConfig(label="home"))]

        results = await executor.run_all(tests, [environment, other])

        assert [r.environment for r in results] == ["chrome", "firefox"]
        assert lifecycle.acquired == 2

    @pytest.mark.asyncio
    async def test_error_does_not_stop_other_tests(self, make_executor, environment):
        executor, lifecycle = make_executor(RunOptions(), faults=[SessionFault("boom")])
        tests = [("pages", TestCaseConfig(label="home")), ("pages", TestCaseConfig(label="about"))]

        results = await executor.run_all(tests, [environment])

        assert [r.result for r in results] == [Outcome.ERROR, Outcome.BASELINE_CREATED]
        assert lifecycle.acquired == 2

    @pytest.mark.asyncio
    async def test_post_load_script_runs(self, make_executor, environment):
        executor, lifecycle = make_executor(RunOptions())
        script = "document.body.style.background = 'white'; return 42;"
        tests = [("pages", TestCaseConfig(label="home", script=script))]

        await executor.run_all(tests, [environment])

        assert lifecycle.sessions[0].scripts == [script]

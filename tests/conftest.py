"""Pytest configuration and shared fixtures."""

import io
from pathlib import Path
from typing import Any, Callable

import pytest
from PIL import Image

from visreg.errors import SessionFault
from visreg.models.capture import CapturePaths, CaptureSession, ScrollMeasurement
from visreg.models.config import (
    CaptureDefaults,
    EnvironmentConfig,
    FrameworkConfig,
    PathsConfig,
    RunOptions,
    StorageConfig,
    TestCaseConfig,
)


# ============================================================================
# Fake remote session
# ============================================================================


class FakeSession:
    """In-memory RemoteSession that serves viewport slices of a page image.

    Scrolling behaves like a browser: the offset advances one viewport but is
    clamped so the last viewport ends at the bottom of the page.
    """

    def __init__(
        self,
        page: Image.Image,
        viewport_height: int | None = None,
        label: str = "fake",
        faults: list[BaseException] | None = None,
        ready_state: str = "complete",
        title: str = "Fixture Page",
    ):
        self.page = page.convert("RGB")
        self.viewport_height = viewport_height or self.page.height
        self.label = label
        self.faults = faults if faults is not None else []
        self.ready_state = ready_state
        self.title = title
        self.offset = 0
        self.closed = False
        self.navigations: list[str] = []
        self.scripts: list[str] = []
        self.screenshots = 0
        self.scrolls = 0

    async def navigate(self, url: str) -> None:
        if self.faults:
            raise self.faults.pop(0)
        self.navigations.append(url)
        self.offset = 0

    async def get_ready_state(self) -> str:
        return self.ready_state

    async def get_title(self) -> str:
        return self.title

    async def screenshot(self, full_page: bool = False) -> bytes:
        self.screenshots += 1
        if full_page:
            image = self.page
        else:
            image = self.page.crop(
                (0, self.offset, self.page.width, self.offset + self.viewport_height)
            )
        buf = io.BytesIO()
        image.save(buf, format="PNG")
        return buf.getvalue()

    async def execute_script(self, source: str) -> Any:
        self.scripts.append(source)
        return {"ignored": True}

    async def scroll_by_viewport_height(self, wait_after_scroll_ms: int = 0) -> ScrollMeasurement:
        self.scrolls += 1
        before = self.offset
        bottom = max(self.page.height - self.viewport_height, 0)
        self.offset = min(before + self.viewport_height, bottom)
        return ScrollMeasurement(
            scroll_height=self.page.height,
            viewport_height=self.viewport_height,
            offset_before=before,
            offset_after=self.offset,
        )

    async def close(self) -> None:
        self.closed = True


class FakeLifecycle:
    """Stands in for SessionLifecycle; every session serves the same page."""

    def __init__(self, page: Image.Image, viewport_height: int | None = None,
                 faults: list[BaseException] | None = None):
        self.page = page
        self.viewport_height = viewport_height
        self.faults = faults if faults is not None else []
        self.session: FakeSession | None = None
        self.environment: EnvironmentConfig | None = None
        self.sessions: list[FakeSession] = []
        self.acquired = 0
        self.released = 0
        self.refreshed = 0
        self.shut_down = False
        self.acquire_error: BaseException | None = None
        self.session_kwargs: dict = {}

    async def ensure(self, environment, use_tunnel=False, headless=None):
        if self.session is not None and self.environment.label == environment.label:
            return self.session
        await self.release()
        return await self.acquire(environment, use_tunnel, headless)

    async def acquire(self, environment, use_tunnel=False, headless=None):
        if self.acquire_error is not None:
            raise self.acquire_error
        self.acquired += 1
        self.session = FakeSession(
            self.page, self.viewport_height, label=environment.label, faults=self.faults,
            **self.session_kwargs,
        )
        self.environment = environment
        self.sessions.append(self.session)
        return self.session

    async def release(self, session=None):
        target = session or self.session
        if target is None:
            return
        if target is self.session:
            self.session = None
        self.released += 1
        await target.close()

    async def refresh(self, session=None):
        self.refreshed += 1
        environment = self.environment
        await self.release(session)
        return await self.acquire(environment)

    async def shutdown(self):
        await self.release()
        self.shut_down = True


# ============================================================================
# Image helpers
# ============================================================================


def solid_image(width: int, height: int, color=(255, 255, 255)) -> Image.Image:
    return Image.new("RGB", (width, height), color)


def banded_image(width: int, height: int, band: int = 50) -> Image.Image:
    """Horizontal stripes so each viewport slice is distinguishable."""
    img = Image.new("RGB", (width, height))
    for i, top in enumerate(range(0, height, band)):
        shade = (i * 37) % 256
        img.paste((shade, 255 - shade, (i * 91) % 256), (0, top, width, min(top + band, height)))
    return img


@pytest.fixture
def make_png(tmp_path: Path) -> Callable[..., Path]:
    """Write a solid-colour PNG and return its path."""

    def _make(name: str, width: int = 100, height: int = 100, color=(255, 255, 255)) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        solid_image(width, height, color).save(path)
        return path

    return _make


@pytest.fixture
def solid():
    return solid_image


@pytest.fixture
def banded():
    return banded_image


@pytest.fixture
def fake_session_cls():
    return FakeSession


@pytest.fixture
def fake_lifecycle_cls():
    return FakeLifecycle


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def test_case() -> TestCaseConfig:
    return TestCaseConfig(label="home", desc="Landing page")


@pytest.fixture
def environment() -> EnvironmentConfig:
    """Remote environment that returns native full-page screenshots."""
    return EnvironmentConfig(label="chrome", browser_name="chrome", require_scroll=False)


@pytest.fixture
def framework_config(tmp_path: Path, test_case: TestCaseConfig,
                     environment: EnvironmentConfig) -> FrameworkConfig:
    return FrameworkConfig(
        base_url="https://storybook.example.com",
        endpoint="/iframe.html?id=<group>--<label>",
        tests={"pages": [test_case]},
        environments=[environment],
        defaults=CaptureDefaults(mismatch_tolerance=1.0),
        paths=PathsConfig(
            baseline_dir=str(tmp_path / "baseline"),
            working_dir=str(tmp_path / "test"),
            diff_dir=str(tmp_path / "diff"),
            results_dir=str(tmp_path / "results"),
        ),
        storage=StorageConfig(
            bucket="builds",
            root_dir=str(tmp_path / "store"),
            base_url="https://cdn.example.com",
        ),
    )


@pytest.fixture
def run_options() -> RunOptions:
    return RunOptions(build_key="build-42")


@pytest.fixture
def capture_session(tmp_path: Path, test_case: TestCaseConfig,
                    environment: EnvironmentConfig) -> CaptureSession:
    """A compare-ready session context with no browser attached."""
    paths = CapturePaths.build(
        tmp_path / "baseline", tmp_path / "test", tmp_path / "diff",
        "pages", test_case.label, environment.label,
    )
    return CaptureSession(
        group="pages",
        test=test_case,
        environment=environment,
        url="https://storybook.example.com/pages/home",
        paths=paths,
        tolerance=1.0,
        max_scroll=20,
        require_scroll=True,
        optimize=False,
    )


@pytest.fixture
def transient_fault() -> SessionFault:
    return SessionFault("Session not started or terminated")

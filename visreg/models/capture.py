"""Per-(test, environment) execution context threaded through the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from visreg.models.config import EnvironmentConfig, TestCaseConfig


class Outcome(str, Enum):
    BASELINE_CREATED = "baseline_created"  # no prior baseline existed
    BASELINE_ESTABLISHED = "baseline_established"  # update was forced this run
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    ERROR = "error"

    @property
    def passed(self) -> bool:
        return self in (Outcome.BASELINE_CREATED, Outcome.BASELINE_ESTABLISHED, Outcome.MATCHED)

    @property
    def is_baseline(self) -> bool:
        return self in (Outcome.BASELINE_CREATED, Outcome.BASELINE_ESTABLISHED)


class CaptureMode(str, Enum):
    COMPARE = "compare"
    ESTABLISH = "establish"


class PipelineStage(str, Enum):
    INIT = "init"
    SESSION_READY = "session_ready"
    BASELINE_RESOLVED = "baseline_resolved"
    PAGE_OPENED = "page_opened"
    CAPTURED = "captured"
    COMPARED = "compared"
    ARTIFACTS_UPLOADED = "artifacts_uploaded"
    RECORD_WRITTEN = "record_written"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ScrollMeasurement:
    scroll_height: int  # total scrollable page height
    viewport_height: int  # distance scrolled per step
    offset_before: int
    offset_after: int

    @property
    def moved(self) -> bool:
        return self.offset_after != self.offset_before


@dataclass(frozen=True)
class CapturePaths:
    baseline: Path
    working: Path
    diff: Path
    storage_path: str  # "<group>/<label>/<file>.png" inside a build bucket

    @classmethod
    def build(
        cls,
        baseline_root: Path,
        working_root: Path,
        diff_root: Path,
        group: str,
        label: str,
        env_label: str,
        prefix: str = "",
    ) -> "CapturePaths":
        file_name = f"{prefix}{env_label}.png"
        rel = Path(group) / label
        return cls(
            baseline=baseline_root / rel / file_name,
            working=working_root / rel / file_name,
            diff=diff_root / rel / file_name.replace(".png", ".jpg"),
            storage_path=f"{group}/{label}/{file_name}",
        )


@dataclass
class CaptureSession:
    """Mutable context for one (test, environment) execution.

    Configuration-derived fields are fixed at creation. Stages only mutate
    the browser handle, the scroll measurement, the mode/outcome and the
    storage keys they own.
    """
    group: str
    test: TestCaseConfig
    environment: EnvironmentConfig
    url: str
    paths: CapturePaths
    tolerance: float
    max_scroll: int
    require_scroll: bool
    optimize: bool
    crop_top: int = 0
    crop_bottom: int = 0
    screenshot_delay: float = 0.0
    wait_after_scroll_ms: int = 0

    browser: Any = None  # live RemoteSession
    mode: CaptureMode = CaptureMode.ESTABLISH
    stage: PipelineStage = PipelineStage.INIT
    outcome: Optional[Outcome] = None
    mismatch_percentage: Optional[float] = None
    chunk_paths: list[Path] = field(default_factory=list)
    last_scroll: Optional[ScrollMeasurement] = None
    error: Optional[str] = None

    # Object storage bookkeeping
    baseline_key: Optional[str] = None
    baseline_source_bucket: Optional[str] = None
    baseline_downloaded: bool = False
    test_key: Optional[str] = None
    diff_key: Optional[str] = None
    base_key: Optional[str] = None

    @property
    def test_id(self) -> str:
        return f"{self.group}/{self.test.label}"

    @property
    def output_path(self) -> Path:
        """Where the stitched capture is written for the current mode."""
        return self.paths.working if self.mode == CaptureMode.COMPARE else self.paths.baseline

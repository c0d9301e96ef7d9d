"""Configuration models for the visual regression runner."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class CropBand(BaseModel):
    """Pixel rows discarded from every captured chunk (device chrome)."""
    top: int = 0
    bottom: int = 0

    @field_validator("top", "bottom")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("crop values must be >= 0")
        return v


class HeadlessConfig(BaseModel):
    viewport_width: Optional[int] = None
    viewport_height: int = 900
    emulate_device: Optional[str] = None  # Playwright device descriptor name
    wait_seconds_before_screenshot: float = 0


class TestCaseConfig(BaseModel):
    label: str
    path: Optional[str] = None  # overrides the endpoint template
    desc: str = ""
    script: Optional[str] = None
    mismatch_tolerance: Optional[float] = None
    max_scroll: Optional[int] = Field(default=None, ge=1)
    require_scroll: Optional[bool] = None
    wait_seconds_before_screenshot: float = 0
    optimize_image: Optional[bool] = None
    headless: Optional[HeadlessConfig] = None


class EnvironmentConfig(BaseModel):
    label: str
    browser_name: str = "chrome"
    browser_version: Optional[str] = None
    device: Optional[str] = None
    os: Optional[str] = None
    os_version: Optional[str] = None
    resolution: Optional[str] = None
    real_mobile: bool = False

    # Run on a local headless Chromium instead of the remote grid
    headless: bool = False
    # Route remote traffic through the local tunnel
    local: bool = False

    require_scroll: bool = True
    crop_image: Optional[CropBand] = None
    add_mismatch_tolerance: float = 0.0
    max_scroll: Optional[int] = Field(default=None, ge=1)
    wait_after_scroll_ms: int = 0
    wait_seconds_before_screenshot: float = 0
    ignore_last_screenshot: bool = False

    # Provider-specific capabilities, passed through verbatim
    capabilities: dict[str, Any] = Field(default_factory=dict)


class CaptureDefaults(BaseModel):
    mismatch_tolerance: float = 0.01  # percent
    max_scroll: Optional[int] = Field(default=20, ge=1)
    optimize_image: bool = False
    wait_seconds_before_screenshot: float = 0
    wait_after_scroll_ms: int = 0
    prefix_image: str = ""


class PathsConfig(BaseModel):
    baseline_dir: str = "./visual-regression/screenshots/baseline"
    working_dir: str = "./visual-regression/screenshots/test"
    diff_dir: str = "./visual-regression/screenshots/diff"
    results_dir: str = "./visual-regression"


class StorageConfig(BaseModel):
    # "local" keeps buckets as directories under root_dir; "s3" uses boto3
    backend: Literal["local", "s3"] = "local"
    region: Optional[str] = None
    endpoint_url: Optional[str] = None  # S3-compatible services
    bucket: str = "visual-regression"
    root_dir: str = "./visual-regression/store"
    base_url: str = ""
    develop_build_tag: str = "develop"
    feature_build_tag: str = "feature"
    manifest_key: str = "manifest.json"


class RunOptions(BaseModel):
    """Per-run switches, usually populated from the command line."""
    update_baseline: bool = False
    download: bool = False
    upload: bool = False
    upload_on_mismatch: bool = False
    build_key: str = "default"
    download_develop_build_tag: bool = False
    upload_develop_build_tag: bool = False
    use_tunnel: bool = False
    dont_flag: bool = False
    archive: bool = False

    @property
    def storage_enabled(self) -> bool:
        return self.download or self.upload or self.upload_on_mismatch


class FrameworkConfig(BaseModel):
    app_name: str = "Visual Regression"
    base_url: str = ""
    endpoint: str = "/<group>/<label>"

    tests: dict[str, list[TestCaseConfig]] = Field(default_factory=dict)
    environments: list[EnvironmentConfig] = Field(
        default_factory=lambda: [EnvironmentConfig(label="headless", headless=True, require_scroll=False)]
    )

    defaults: CaptureDefaults = Field(default_factory=CaptureDefaults)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    headless: HeadlessConfig = Field(default_factory=HeadlessConfig)

    def environment(self, label: str) -> EnvironmentConfig | None:
        for env in self.environments:
            if env.label == label:
                return env
        return None

    @classmethod
    def load(cls, path: str | Path) -> "FrameworkConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(), f, indent=2)

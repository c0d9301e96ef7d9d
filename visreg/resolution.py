"""Layered setting resolution: test case > environment > global defaults.

Every capture setting can be given at up to three levels. The functions here
are the only place that knows the precedence for each one, so the pipeline
never walks optional-field chains itself.
"""

from __future__ import annotations

from visreg.models.config import (
    CaptureDefaults,
    EnvironmentConfig,
    HeadlessConfig,
    TestCaseConfig,
)

DEFAULT_MAX_SCROLL = 20


def resolve_tolerance(
    test: TestCaseConfig, env: EnvironmentConfig, defaults: CaptureDefaults,
) -> float:
    """Mismatch tolerance in percent.

    The test override replaces the global value; the environment adjustment
    is always added on top (noisy browsers get a wider band).
    """
    base = test.mismatch_tolerance if test.mismatch_tolerance is not None else defaults.mismatch_tolerance
    return float(base) + float(env.add_mismatch_tolerance or 0.0)


def resolve_max_scroll(
    test: TestCaseConfig, env: EnvironmentConfig, defaults: CaptureDefaults,
) -> int:
    for value in (test.max_scroll, env.max_scroll, defaults.max_scroll):
        if value is not None:
            return int(value)
    return DEFAULT_MAX_SCROLL


def resolve_require_scroll(test: TestCaseConfig, env: EnvironmentConfig) -> bool:
    """Scrolling is skipped when either the environment or the test disables it."""
    if env.headless:
        return False
    return env.require_scroll is not False and test.require_scroll is not False


def resolve_optimize(test: TestCaseConfig, defaults: CaptureDefaults) -> bool:
    if test.optimize_image is not None:
        return test.optimize_image
    return defaults.optimize_image


def resolve_crop(env: EnvironmentConfig) -> tuple[int, int]:
    if env.crop_image is None:
        return 0, 0
    return env.crop_image.top, env.crop_image.bottom


def resolve_screenshot_delay(
    test: TestCaseConfig,
    env: EnvironmentConfig,
    defaults: CaptureDefaults,
    headless: HeadlessConfig | None = None,
) -> float:
    """Seconds to wait between page readiness and the first screenshot.

    Waits accumulate across layers rather than override each other.
    """
    delay = (
        (defaults.wait_seconds_before_screenshot or 0)
        + (test.wait_seconds_before_screenshot or 0)
        + (env.wait_seconds_before_screenshot or 0)
    )
    if env.headless:
        layer = resolve_headless(test, headless)
        delay += layer.wait_seconds_before_screenshot or 0
    return float(delay)


def resolve_wait_after_scroll(env: EnvironmentConfig, defaults: CaptureDefaults) -> int:
    """Milliseconds to wait after a scroll before measuring the new offset."""
    return int((defaults.wait_after_scroll_ms or 0) + (env.wait_after_scroll_ms or 0))


def resolve_headless(test: TestCaseConfig, headless: HeadlessConfig | None) -> HeadlessConfig:
    """Merge a test's headless overrides onto the global headless settings."""
    base = headless or HeadlessConfig()
    if test.headless is None:
        return base
    overrides = test.headless.model_dump(exclude_unset=True)
    if "viewport_width" in overrides and "emulate_device" not in overrides:
        # An explicit width on the test wins over a globally emulated device
        overrides["emulate_device"] = None
    return base.model_copy(update=overrides)

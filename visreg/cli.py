"""CLI entry point for the visual regression runner."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from visreg.errors import CredentialsMissing, TunnelTimeout
from visreg.models.capture import Outcome
from visreg.models.config import EnvironmentConfig, FrameworkConfig, RunOptions, TestCaseConfig
from visreg.models.test_result import RunSummary
from visreg.orchestrator import Orchestrator

console = Console()

DEFAULT_CONFIG = "visual-regression.json"

OUTCOME_STYLES = {
    Outcome.BASELINE_CREATED: "cyan",
    Outcome.BASELINE_ESTABLISHED: "cyan",
    Outcome.MATCHED: "green",
    Outcome.MISMATCHED: "red",
    Outcome.ERROR: "red",
}


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def load_config(path: str) -> FrameworkConfig:
    try:
        return FrameworkConfig.load(path)
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {path}[/red]")
        console.print("Run 'visreg init' to create a default config.")
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Visual regression testing across browsers and devices"""
    setup_logging(verbose)


@cli.command()
@click.option("--config", "-c", default=DEFAULT_CONFIG, envvar="VISUAL_REGRESSION_CONFIG",
              help="Config file path")
@click.option("--name", "-n", "names", multiple=True,
              help="Test to run: group, label or group/label (repeatable)")
@click.option("--env", "-e", "envs", multiple=True, help="Environment label (repeatable)")
@click.option("--update", "-u", is_flag=True, help="Establish new baselines")
@click.option("--local", "-l", is_flag=True, help="Route remote sessions through the local tunnel")
@click.option("--download", is_flag=True, help="Download baselines from the object store")
@click.option("--upload", is_flag=True, help="Upload new baselines to the object store")
@click.option("--upload-on-mismatch", is_flag=True, help="Upload captures and diffs of mismatches")
@click.option("--build-key", default="default", envvar="BUILD_KEY", help="Build key")
@click.option("--download-develop", is_flag=True, help="Download baselines from the develop build")
@click.option("--upload-develop", is_flag=True, help="Upload baselines to the develop build")
@click.option("--archive", "-a", is_flag=True, help="Zip the captures after the run")
@click.option("--dont-flag", is_flag=True, help="Exit 0 even when tests mismatch")
@click.option("--base-url", envvar=["VISREG_BASE_URL", "STORYBOOK_URL"], default=None,
              help="Override the configured base URL")
def run(
    config: str,
    names: tuple[str, ...],
    envs: tuple[str, ...],
    update: bool,
    local: bool,
    download: bool,
    upload: bool,
    upload_on_mismatch: bool,
    build_key: str,
    download_develop: bool,
    upload_develop: bool,
    archive: bool,
    dont_flag: bool,
    base_url: str | None,
) -> None:
    """Capture every selected test and compare it against its baseline."""
    cfg = load_config(config)
    if base_url:
        cfg.base_url = base_url

    options = RunOptions(
        update_baseline=update,
        download=download,
        upload=upload,
        upload_on_mismatch=upload_on_mismatch,
        build_key=build_key,
        download_develop_build_tag=download_develop,
        upload_develop_build_tag=upload_develop,
        use_tunnel=local,
        dont_flag=dont_flag,
        archive=archive,
    )

    orchestrator = Orchestrator(cfg, options)
    try:
        summary = orchestrator.run(list(names) or None, list(envs) or None)
    except (CredentialsMissing, TunnelTimeout, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    print_summary(summary)
    if not summary.passed and not dont_flag:
        sys.exit(1)


def print_summary(summary: RunSummary) -> None:
    console.print("\n[bold green]Run Complete[/bold green]")
    table = Table(title=f"Results — {summary.build_key}")
    table.add_column("Test", style="bold")
    table.add_column("Environment")
    table.add_column("Result")
    table.add_column("Mismatch", justify="right")
    table.add_column("Tolerance", justify="right")
    for r in summary.test_results:
        style = OUTCOME_STYLES.get(r.result, "white")
        mismatch = f"{r.mismatch_percentage:.2f}%" if r.mismatch_percentage is not None else "-"
        table.add_row(
            r.test_id,
            r.environment,
            f"[{style}]{r.result.value}[/{style}]",
            mismatch,
            f"{r.mismatch_tolerance:.2f}%",
        )
    console.print(table)
    console.print(
        f"  {summary.matched} matched, [red]{summary.mismatched} mismatched[/red], "
        f"{summary.baselines} baselines, [red]{summary.errors} errors[/red] "
        f"({summary.duration_seconds}s)"
    )
    for r in summary.test_results:
        if r.failure_reason:
            console.print(f"  [red]{r.test_id} ({r.environment}):[/red] {r.failure_reason}")


@cli.command()
@click.option("--base-url", "-b", prompt="Base URL", help="URL the test paths are relative to")
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def init(base_url: str, config: str) -> None:
    """Create a default configuration file."""
    config_path = Path(config)
    if config_path.exists():
        if not click.confirm(f"{config_path} already exists. Overwrite?"):
            return

    cfg = FrameworkConfig(
        base_url=base_url,
        tests={"pages": [TestCaseConfig(label="home", path="/")]},
        environments=[
            EnvironmentConfig(label="headless", headless=True, require_scroll=False),
            EnvironmentConfig(
                label="chrome-desktop", browser_name="chrome", os="Windows", os_version="11",
                resolution="1920x1080",
            ),
        ],
    )
    cfg.save(config_path)
    console.print(f"[green]Created {config_path}[/green]")
    console.print("\nYou can now customize this file and run:")
    console.print("  [blue]visreg run --env headless[/blue]")


@cli.command("list")
@click.option("--config", "-c", default=DEFAULT_CONFIG, envvar="VISUAL_REGRESSION_CONFIG",
              help="Config file path")
def list_cmd(config: str) -> None:
    """List configured tests and environments."""
    cfg = load_config(config)

    tests = Table(title="Tests")
    tests.add_column("Test", style="bold")
    tests.add_column("Path")
    tests.add_column("Description")
    for group, cases in cfg.tests.items():
        for tc in cases:
            tests.add_row(f"{group}/{tc.label}", tc.path or cfg.endpoint, tc.desc)
    console.print(tests)

    envs = Table(title="Environments")
    envs.add_column("Label", style="bold")
    envs.add_column("Browser")
    envs.add_column("Platform")
    envs.add_column("Scroll")
    for env in cfg.environments:
        platform = "headless" if env.headless else " ".join(
            v for v in (env.device, env.os, env.os_version) if v
        )
        envs.add_row(env.label, env.browser_name, platform, "yes" if env.require_scroll else "no")
    console.print(envs)


if __name__ == "__main__":
    cli()

"""CLI entry point: xr-build.

Subcommands:
    xr-build build scene.tsx -f reactThreeFiber -o bundle.js
    xr-build watch scene.tsx -f reactThreeFiber --preset fast
    xr-build probe
    xr-build worker-stats
    xr-build clear-cache
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from xr_buildkit.analyzer import BuildAnalysis
from xr_buildkit.backends.factory import BuildBackendFactory
from xr_buildkit.config import BuildKitSettings
from xr_buildkit.core.logging import setup_logging
from xr_buildkit.hot_reload import PRESETS, HotReloadConfig, HotReloadScheduler
from xr_buildkit.manager import BuildManager
from xr_buildkit.models.build import BuildResult
from xr_buildkit.models.framework import FrameworkKind


def _make_factory(settings: BuildKitSettings) -> BuildBackendFactory:
    return BuildBackendFactory(settings)


def _parse_framework(ctx: click.Context, param: click.Parameter, value: str) -> FrameworkKind:
    try:
        return FrameworkKind.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from None


def _emit_bundle(result: BuildResult, output: str | None) -> None:
    if output:
        Path(output).write_text(result.bundle_code or "")
        click.echo(f"Wrote {output}", err=True)
    else:
        click.echo(result.bundle_code or "")


def _echo_failure(result: BuildResult) -> None:
    click.echo(f"Error: {result.headline}", err=True)
    for detail in result.details:
        click.echo(f"  {detail}", err=True)


def _echo_analysis(analysis: BuildAnalysis) -> None:
    click.echo(
        f"Grade: {analysis.grade.value} ({analysis.grade.description})",
        err=True,
    )
    click.echo(
        f"  Build time: {analysis.build_time:.2f}s, bundle: {analysis.bundle_size_kb:.1f} KB",
        err=True,
    )
    for suggestion in analysis.optimization.suggestions:
        click.echo(f"  - {suggestion} (estimate)", err=True)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """xr-build: bundle AI-authored 3D/XR scene code."""
    setup_logging("DEBUG" if verbose else None)
    ctx.obj = BuildKitSettings.from_env()


@main.command("build")
@click.argument("source_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-f", "--framework", required=True, callback=_parse_framework,
    help="reactThreeFiber | reactylon | babylon | aFrame",
)
@click.option("-o", "--output", default=None, help="Write the bundle here instead of stdout")
@click.option("--minify", is_flag=True, help="Minify the bundle")
@click.option(
    "--wait-native/--no-wait-native", default=True,
    help="Wait for the native worker probe before picking a backend",
)
@click.pass_obj
def build(
    settings: BuildKitSettings,
    source_file: str,
    framework: FrameworkKind,
    output: str | None,
    minify: bool,
    wait_native: bool,
) -> None:
    """Build one source file into a single bundle."""
    code = Path(source_file).read_text()

    async def _run() -> tuple[BuildResult, BuildManager]:
        factory = _make_factory(settings)
        manager = BuildManager(factory)
        try:
            if wait_native:
                await factory.wait_for_probe()
            result = await manager.build_code(code, framework, minify=minify)
        finally:
            await factory.close()
        return result, manager

    result, manager = asyncio.run(_run())
    if not result.success:
        _echo_failure(result)
        sys.exit(1)

    _emit_bundle(result, output)
    click.echo(manager.status.status_text, err=True)
    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)
    if manager.last_analysis is not None:
        _echo_analysis(manager.last_analysis)


@main.command("watch")
@click.argument("source_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-f", "--framework", required=True, callback=_parse_framework,
    help="reactThreeFiber | reactylon | babylon | aFrame",
)
@click.option("-o", "--output", default=None, help="Write each bundle here instead of stdout")
@click.option(
    "--preset", type=click.Choice(sorted(PRESETS)), default=None,
    help="Hot reload preset (default: XR_BUILDKIT_HOT_RELOAD_PRESET or 'default')",
)
@click.option("--interval", default=0.5, show_default=True, help="File poll interval (s)")
@click.option("--max-reloads", default=0, help="Stop after N reloads (0 = run until Ctrl-C)")
@click.pass_obj
def watch(
    settings: BuildKitSettings,
    source_file: str,
    framework: FrameworkKind,
    output: str | None,
    preset: str | None,
    interval: float,
    max_reloads: int,
) -> None:
    """Rebuild whenever the file changes, after the preset's debounce delay."""
    if not framework.requires_build:
        click.echo(f"{framework.display_name} runs without a build step; nothing to watch.")
        return

    config = HotReloadConfig.named(preset or settings.hot_reload_preset)
    path = Path(source_file)

    async def _run() -> None:
        factory = _make_factory(settings)
        manager = BuildManager(factory)
        scheduler = HotReloadScheduler(manager, config)
        done = asyncio.Event()
        reloads = 0

        def _on_reload(result: BuildResult) -> None:
            nonlocal reloads
            reloads += 1
            if result.success:
                _emit_bundle(result, output)
                click.echo(f"Reloaded: {manager.status.status_text}", err=True)
            else:
                _echo_failure(result)
            if max_reloads and reloads >= max_reloads:
                done.set()

        scheduler.on_reload(_on_reload)
        scheduler.enable()
        click.echo(
            f"Watching {path} ({framework.display_name}, debounce {config.debounce_delay}s)",
            err=True,
        )
        try:
            while not done.is_set():
                scheduler.source_changed(path.read_text(), framework)
                try:
                    await asyncio.wait_for(done.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await scheduler.close()
            await factory.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Stopped.", err=True)


@main.command("probe")
@click.pass_obj
def probe(settings: BuildKitSettings) -> None:
    """Report which backend a build would use."""

    async def _run() -> tuple[bool, str]:
        factory = _make_factory(settings)
        try:
            available = await factory.wait_for_probe()
            return available, factory.create_backend().name
        finally:
            await factory.close()

    available, backend = asyncio.run(_run())
    click.echo(f"Native worker: {'available' if available else 'unavailable'}")
    click.echo(f"Selected backend: {backend}")


@main.command("worker-stats")
@click.pass_obj
def worker_stats(settings: BuildKitSettings) -> None:
    """Print the native worker's build and cache counters."""

    async def _run():
        factory = _make_factory(settings)
        try:
            await factory.wait_for_probe()
            return await BuildManager(factory).get_worker_stats()
        finally:
            await factory.close()

    stats = asyncio.run(_run())
    if stats is None:
        click.echo("Error: native worker not available", err=True)
        sys.exit(1)
    click.echo(f"Total builds: {stats.total_builds}")
    click.echo(f"Cache hits: {stats.cache_hits}")
    click.echo(f"Average build time: {stats.average_build_time:.0f}ms")
    click.echo(f"Last build time: {stats.last_build_time}ms")
    click.echo(f"Cache size: {stats.cache_size}")
    click.echo(f"Uptime: {stats.uptime:.1f}s")


@main.command("clear-cache")
@click.pass_obj
def clear_cache(settings: BuildKitSettings) -> None:
    """Drop every cached build in the native worker."""

    async def _run() -> bool:
        factory = _make_factory(settings)
        try:
            if not await factory.wait_for_probe():
                return False
            return await BuildManager(factory).clear_cache()
        finally:
            await factory.close()

    if not asyncio.run(_run()):
        click.echo("Error: native worker not available", err=True)
        sys.exit(1)
    click.echo("Build cache cleared")

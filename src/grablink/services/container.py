"""Wiring of the long-lived service objects shared by the HTTP layer."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from grablink.core.config import Settings
from grablink.infra.process import CommandExecutor, ProcessRunner
from grablink.infra.sweeper import PeriodicSweeper
from grablink.services.downloader import DownloadOrchestrator, DownloadPipeline
from grablink.services.probe import ExtractionService
from grablink.services.ratelimit import RateLimiter
from grablink.services.registry import DownloadRegistry
from grablink.services.transcode import EngineFactory, TranscodingAdapter


@dataclass
class Services:
    """Everything a request handler needs, created once per application."""

    settings: Settings
    extraction: ExtractionService
    downloads: DownloadPipeline
    registry: DownloadRegistry
    info_limiter: RateLimiter
    download_limiter: RateLimiter
    sweepers: list[PeriodicSweeper] = field(default_factory=list)

    def start(self) -> None:
        for sweeper in self.sweepers:
            sweeper.start()

    async def stop(self) -> None:
        for sweeper in self.sweepers:
            await sweeper.stop()


def build_services(
    settings: Settings,
    executor: Optional[CommandExecutor] = None,
    engine_factory: Optional[EngineFactory] = None,
) -> Services:
    """Create the service graph for ``settings``.

    Parameters
    ----------
    settings: Settings
        Resolved application settings.
    executor: Optional[CommandExecutor]
        Process executor; defaults to a ``ProcessRunner`` bounded by
        ``max_concurrent_processes``.
    engine_factory: Optional[EngineFactory]
        Transcoding engine factory; defaults to ``FfmpegJob``.
    """

    run: CommandExecutor = executor or ProcessRunner(settings.max_concurrent_processes).run
    extraction: ExtractionService = ExtractionService(settings, run)
    registry: DownloadRegistry = DownloadRegistry(settings.download_ttl)
    transcoder: TranscodingAdapter = (
        TranscodingAdapter(settings, engine_factory) if engine_factory else TranscodingAdapter(settings)
    )
    pipeline: DownloadPipeline = DownloadPipeline(
        settings,
        DownloadOrchestrator(settings, run, extraction),
        transcoder,
        registry,
    )
    info_limiter: RateLimiter = RateLimiter()
    download_limiter: RateLimiter = RateLimiter()

    async def sweep_limiters() -> int:
        return await info_limiter.sweep() + await download_limiter.sweep()

    interval: float = settings.sweep_interval
    return Services(
        settings=settings,
        extraction=extraction,
        downloads=pipeline,
        registry=registry,
        info_limiter=info_limiter,
        download_limiter=download_limiter,
        sweepers=[
            PeriodicSweeper("probe-cache", interval, extraction.cache.sweep),
            PeriodicSweeper("registry", interval, registry.sweep),
            PeriodicSweeper("rate-limit", interval, sweep_limiters),
        ],
    )

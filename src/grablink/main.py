"""FastAPI application entrypoint for the GrabLink service."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Final, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from yt_dlp.version import __version__ as YTDLP_PACKAGE_VERSION

from grablink.api.http import router as api_router
from grablink.core.config import Settings, get_settings
from grablink.core.logging import setup_logging
from grablink.infra.process import which_version
from grablink.services.command import resolve_ytdlp_program
from grablink.services.container import Services, build_services

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Notes
    -----
    - Services are built once and stored on ``app.state.services``; tests pass
      their own graph (fake executor, fake transcoding engine) via ``services``.
    - The lifespan starts the probe-cache, registry and rate-limit sweepers and
      stops them on shutdown, so no timer outlives the application.
    - Logging is configured up front based on settings; settings are loaded once.

    Returns
    -------
    FastAPI
        The configured FastAPI application.
    """

    settings = settings or get_settings()
    setup_logging(settings.debug, settings.app_name)
    graph: Services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        graph.start()
        logger.info("Service started", extra={"temp_dir": str(settings.temp_dir)})
        try:
            yield
        finally:
            await graph.stop()

    app: FastAPI = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.services = graph
    app.include_router(api_router)

    @app.get("/health", tags=["system"])
    async def health() -> JSONResponse:
        """Report whether the external tools are usable.

        Notes
        -----
        - Both tools are checked by running their version commands; the
          installed yt-dlp package version is reported alongside.
        - Answers 503 when either tool is missing.
        """

        program: tuple[str, ...] = resolve_ytdlp_program(settings.ytdlp_command)
        ytdlp: Optional[str] = await which_version([*program, "--version"])
        ffmpeg_line: Optional[str] = await which_version([settings.ffmpeg_binary, "-version"])
        checks: dict[str, dict[str, Any]] = {
            "ytdlp": {"available": ytdlp is not None, "version": ytdlp, "package": YTDLP_PACKAGE_VERSION},
            "ffmpeg": {
                "available": ffmpeg_line is not None,
                "version": ffmpeg_line.split()[2] if ffmpeg_line and len(ffmpeg_line.split()) > 2 else ffmpeg_line,
            },
        }
        healthy: bool = all(check["available"] for check in checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "checks": checks,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    return app


app: Final[FastAPI] = create_app()


def run() -> None:
    """Serve the application with uvicorn; reloads on change in debug mode."""

    import uvicorn

    uvicorn.run("grablink.main:app", host="127.0.0.1", port=8000, reload=get_settings().debug)


if __name__ == "__main__":
    run()

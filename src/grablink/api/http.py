"""HTTP API routes for the GrabLink service."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import FileResponse, JSONResponse
from starlette.background import BackgroundTask

from grablink.core.errors import ErrorKind, GrabError
from grablink.domain.downloads import DownloadRequest, DownloadResponse, RegistryEntry
from grablink.domain.platform import detect_platform
from grablink.domain.probe import ProbeRequest, ProbeResponse
from grablink.infra.fs import content_type_for, file_size, safe_unlink
from grablink.infra.urls import validate_url
from grablink.services.container import Services
from grablink.services.ratelimit import RateLimitDecision, RateLimiter

logger = logging.getLogger(__name__)

router: APIRouter = APIRouter(prefix="/api/video", tags=["video"])

STREAM_PATH: str = "/api/video/stream"


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_id(request: Request) -> str:
    """Identify the caller: first ``X-Forwarded-For`` hop, ``X-Real-IP``, then the peer."""

    forwarded: Optional[str] = request.headers.get("x-forwarded-for")
    if forwarded:
        first: str = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip: Optional[str] = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def status_for(kind: ErrorKind) -> int:
    """HTTP status used for a failed probe or download."""

    if kind is ErrorKind.UNSUPPORTED_PLATFORM:
        return 400
    return 500


def rate_limit(
    pick: Callable[[Services], RateLimiter],
    limit_of: Callable[[Services], int],
) -> Callable[..., Awaitable[RateLimitDecision]]:
    """Build a dependency enforcing one endpoint's quota.

    Notes
    -----
    - ``X-RateLimit-*`` headers are attached to every response; a rejected
      request gets 429 with ``Retry-After``.
    """

    async def dependency(
        request: Request,
        response: Response,
        services: Services = Depends(get_services),
    ) -> RateLimitDecision:
        limit: int = limit_of(services)
        decision: RateLimitDecision = await pick(services).check(
            client_id(request), limit, services.settings.rate_limit_window
        )
        if not decision.allowed:
            headers: dict[str, str] = decision.headers()
            headers["Retry-After"] = str(decision.retry_after(time.time()))
            logger.info("Rate limit exceeded", extra={"client": client_id(request), "path": request.url.path})
            raise HTTPException(
                status_code=429,
                detail="Too many requests. Please try again later.",
                headers=headers,
            )
        response.headers.update(decision.headers())
        return decision

    return dependency


info_quota = rate_limit(lambda s: s.info_limiter, lambda s: s.settings.info_rate_limit)
download_quota = rate_limit(lambda s: s.download_limiter, lambda s: s.settings.download_rate_limit)


async def _probe(url: str, services: Services, decision: RateLimitDecision) -> ProbeResponse | JSONResponse:
    try:
        validate_url(url)
    except ValueError as ve:
        raise HTTPException(status_code=400, detail=str(ve)) from ve

    result: ProbeResponse = await services.extraction.probe(url)
    if result.success or result.error is None:
        return result
    return JSONResponse(
        status_code=status_for(result.error.code),
        content=result.model_dump(mode="json"),
        headers=decision.headers(),
    )


@router.post("/info", response_model=ProbeResponse)
async def post_info(
    payload: ProbeRequest,
    services: Services = Depends(get_services),
    decision: RateLimitDecision = Depends(info_quota),
) -> ProbeResponse | JSONResponse:
    """Probe a video URL and return metadata and quality options.

    Parameters
    ----------
    payload: ProbeRequest
        The request payload containing the video URL.

    Returns
    -------
    ProbeResponse
        Normalized metadata, qualities and the best audio-only option.

    Notes
    -----
    - Results are cached per normalized URL; repeated probes within the cache
      TTL do not invoke the extraction tool.
    - A failed probe still returns a ``ProbeResponse`` body, with ``success``
      set to false and a classified ``error``.

    Raises
    ------
    HTTPException
        400 for an invalid or internal URL; 429 when the quota is spent.
    """

    return await _probe(payload.url, services, decision)


@router.get("/info", response_model=ProbeResponse)
async def get_info(
    url: str = Query(..., description="Video URL to probe"),
    services: Services = Depends(get_services),
    decision: RateLimitDecision = Depends(info_quota),
) -> ProbeResponse | JSONResponse:
    """Same as ``POST /api/video/info`` with the URL in the query string."""

    return await _probe(url, services, decision)


@router.post("/download", response_model=DownloadResponse)
async def post_download(
    payload: DownloadRequest,
    services: Services = Depends(get_services),
    decision: RateLimitDecision = Depends(download_quota),
) -> DownloadResponse | JSONResponse:
    """Materialize a video (or its audio) and publish it for one retrieval.

    Notes
    -----
    - Runs to completion before responding; the response carries a
      ``download.url`` pointing at ``GET /api/video/stream``.
    - The published file expires after ``download_ttl`` seconds.
    """

    try:
        validate_url(payload.url)
    except ValueError as ve:
        raise HTTPException(status_code=400, detail=str(ve)) from ve

    try:
        return await services.downloads.run(payload.url, payload.format, payload.audioFormat)
    except GrabError as err:
        logger.warning("Download failed", extra={"url": payload.url, "kind": err.kind.value})
        body: DownloadResponse = DownloadResponse(
            success=False,
            platform=detect_platform(payload.url).value,
            error=err.to_info(),
        )
        return JSONResponse(
            status_code=status_for(err.kind),
            content=body.model_dump(mode="json", exclude_none=True),
            headers=decision.headers(),
        )


def content_disposition(filename: str) -> str:
    escaped: str = filename.replace("\\", "\\\\").replace('"', '\\"')
    ascii_name: str = escaped.encode("ascii", errors="replace").decode("ascii")
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename, safe='')}"


@router.get("/stream")
async def get_stream(
    download_id: str = Query(..., alias="downloadId", description="Id returned by the download API"),
    services: Services = Depends(get_services),
) -> FileResponse:
    """Send a published file exactly once.

    Notes
    -----
    - The registry entry is removed when the file is handed out and the file is
      deleted once the response has been sent.
    - Unknown, already retrieved and expired ids all answer 404.
    """

    entry: Optional[RegistryEntry] = await services.registry.take(download_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Download not found or expired")

    path: Path = entry.file_path
    if file_size(path) == 0:
        safe_unlink(path)
        raise HTTPException(status_code=404, detail="File not found")

    logger.info("Streaming download", extra={"download_id": download_id, "path": str(path)})
    return FileResponse(
        path,
        media_type=content_type_for(entry.filename),
        headers={
            "Content-Disposition": content_disposition(entry.filename),
            "Cache-Control": "no-cache",
        },
        background=BackgroundTask(safe_unlink, path),
    )

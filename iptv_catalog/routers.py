from typing import Annotated, Any
import logging

from fastapi import APIRouter, Body, HTTPException
from pydantic import ValidationError

from iptv_catalog.dependencies import RegistryDep, SchedulerDep, SessionDep
from iptv_catalog.errors import CatalogError
from iptv_catalog.schemas import (
    CatalogPage,
    ChannelDetail,
    GuideStatus,
    RebuildResponse,
    SessionConfig,
    SessionKeyResponse,
)
from iptv_catalog.services.session_registry import SWEEP_JOB_ID, session_fingerprint


logger = logging.getLogger(__name__)

main_router = APIRouter()

ITEMS_PER_PAGE = 100


@main_router.get("/health")
async def health_check(registry: RegistryDep, scheduler: SchedulerDep) -> dict:
    """Health check endpoint"""
    next_sweep = scheduler.get_next_run_time(SWEEP_JOB_ID)
    return {
        "status": "ok",
        "scheduler_running": scheduler.running,
        "sessions": len(registry),
        "next_session_sweep": next_sweep.isoformat() if next_sweep else None,
    }


@main_router.post("/session-key", response_model=SessionKeyResponse)
async def session_key(config: Annotated[dict[str, Any] | None, Body()] = None) -> SessionKeyResponse:
    """Session key a configuration maps to"""
    return SessionKeyResponse(session_key=session_fingerprint(config or {}))


@main_router.post("/rebuild", response_model=RebuildResponse)
async def rebuild(config: Annotated[dict[str, Any], Body()], registry: RegistryDep) -> RebuildResponse:
    """
    Rebuild the catalog of the session the configuration maps to

    Initialises the guide afterwards when it is enabled.
    """
    try:
        session_config = SessionConfig.model_validate(config)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_input=False, include_context=False))
    if not session_config.m3u:
        raise HTTPException(status_code=400, detail="m3u is required")

    raw_config = {k: v for k, v in config.items() if k != "session_id"}
    session = await registry.resolve(session_config.session_id, raw_config)

    logger.info("Manual rebuild triggered via API for session %s", session.key)
    try:
        rebuilt = await session.cache.rebuild_cache(session_config.m3u, raw_config)
    except CatalogError as e:
        raise HTTPException(status_code=502, detail=str(e))

    await registry.sync_guide(session)
    data = await session.cache.get_cached_data()
    return RebuildResponse(
        session_key=session.key,
        rebuilt=rebuilt,
        channels=len(data.channels),
        genres=len(data.genres),
        epg_urls=data.epg_urls,
    )


@main_router.get("/sessions/{key}/catalog", response_model=CatalogPage)
async def catalog(
    session: SessionDep,
    genre: str | None = None,
    search: str | None = None,
    skip: str | None = None,
) -> CatalogPage:
    """One page of the session's catalog under the request's filter"""
    cache = session.cache
    data = await cache.get_cached_data()
    if cache.config.m3u and not data.channels and cache.record.source_url != cache.config.m3u:
        logger.info("Catalog: cache empty, rebuilding playlist for session %s", session.key)
        try:
            await cache.rebuild_cache(cache.config.m3u)
        except CatalogError as e:
            raise HTTPException(status_code=502, detail=str(e))

    offset = cache.record_request_filter(genre, search, skip or 0)
    channels = await cache.get_filtered_channels()
    data = await cache.get_cached_data()
    return CatalogPage(
        session_key=session.key,
        skip=offset,
        total=len(channels),
        genres=data.genres,
        channels=channels[offset:offset + ITEMS_PER_PAGE],
    )


@main_router.get("/sessions/{key}/channels/{channel_id}", response_model=ChannelDetail)
async def channel_detail(channel_id: str, session: SessionDep) -> ChannelDetail:
    """Channel with guide icon fallback and current / upcoming programs"""
    channel = await session.cache.get_channel(channel_id)
    if channel is None:
        raise HTTPException(status_code=404, detail=f"Channel {channel_id} not found")

    icon = await session.epg.get_channel_icon(channel.tvg_id)
    if icon:
        channel = channel.model_copy(
            update={
                "logo": channel.logo or icon,
                "poster": channel.poster or icon,
                "background": channel.background or icon,
            }
        )

    return ChannelDetail(
        channel=channel,
        icon=icon,
        current_program=await session.epg.get_current_program(channel.tvg_id),
        upcoming_programs=await session.epg.get_upcoming_programs(channel.tvg_id),
    )


@main_router.get("/sessions/{key}/epg/status", response_model=GuideStatus)
async def epg_status(session: SessionDep) -> GuideStatus:
    return await session.epg.get_status()


@main_router.post("/sessions/{key}/epg/refresh")
async def epg_refresh(session: SessionDep) -> dict:
    """
    Manually trigger a guide refresh for the session

    Uses the configured guide URL, else the URLs advertised by the playlists.
    """
    data = await session.cache.get_cached_data()
    guide_url = session.cache.config.epg or ",".join(data.epg_urls)
    if not guide_url:
        raise HTTPException(status_code=400, detail="No EPG URL configured or advertised")

    logger.info("Manual EPG refresh triggered via API for session %s", session.key)
    started = await session.epg.start_epg_update(guide_url)
    if started:
        await session.epg.check_missing_epg(data.channels)
    return {"session_key": session.key, "started": started}

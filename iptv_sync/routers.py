from typing import Annotated
from zoneinfo import ZoneInfo
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response

from iptv_sync.dependencies import get_playlist_service, sync_scheduler
from iptv_sync.schemas import (
    CategoryFlagResponse,
    CategoryToggleRequest,
    ChannelFlagRequest,
    EPGFetchRequest,
    EPGLinkRequest,
    EpisodeResponse,
    GuideResponse,
    M3USubscribeRequest,
    PlaylistEditRequest,
    PlaylistRef,
    PlaylistResponse,
    ProgramResponse,
    ProgrammeRequest,
    XtreamSubscribeRequest,
)
from iptv_sync.services.playlist_service import PlaylistService
from iptv_sync.services.sync_types import CategoryFlagRecord, PlaylistRecord
from iptv_sync.utils.timezone import parse_iso8601_to_utc, utc_now


logger = logging.getLogger(__name__)

main_router = APIRouter()

ServiceDep = Annotated[PlaylistService, Depends(get_playlist_service)]


def _playlist_response(record: PlaylistRecord, channel_count: int) -> PlaylistResponse:
    return PlaylistResponse(
        url=record.url,
        title=record.title,
        kind=record.kind,
        user_agent=record.user_agent,
        epg_urls=record.epg_urls,
        channel_count=channel_count,
        last_sync_at=record.last_sync_at.isoformat() if record.last_sync_at else None,
        is_refreshing=record.is_refreshing,
        last_error=record.last_error,
    )


def _category_response(request: CategoryToggleRequest, flag: CategoryFlagRecord | None) -> CategoryFlagResponse:
    if flag is None:
        return CategoryFlagResponse(
            playlist_url=request.playlist_url,
            category=request.category,
            pinned=False,
            hidden=False,
        )
    return CategoryFlagResponse(
        playlist_url=flag.playlist_url,
        category=flag.category,
        pinned=flag.pinned,
        hidden=flag.hidden,
    )


@main_router.get("/")
async def root() -> dict:
    """Root endpoint with service information"""
    next_run = sync_scheduler.get_next_run_time('playlist_refresh')

    return {
        "service": "IPTV Sync Service",
        "version": "0.1.0",
        "next_scheduled_refresh": next_run.isoformat() if next_run else None,
        "endpoints": {
            "playlists": "/playlists - List, subscribe, refresh and edit playlists",
            "backup": "/backup - Export (GET) or import (POST) the subscription set",
            "epg": "/epg - Fetch, link and query EPG sources",
            "status": "/status - Sync state of a playlist or EPG source",
            "health": "/health - Health check"
        }
    }


@main_router.get("/health")
async def health_check() -> dict:
    """Health check endpoint"""
    next_run = sync_scheduler.get_next_run_time('playlist_refresh')
    return {
        "status": "ok",
        "scheduler_running": sync_scheduler.scheduler.running if sync_scheduler.scheduler else False,
        "next_refresh": next_run.isoformat() if next_run else None
    }


@main_router.get("/playlists", response_model=list[PlaylistResponse])
async def list_playlists(service: ServiceDep) -> list[PlaylistResponse]:
    """List subscribed playlists with their channel counts"""
    rows = await service.list_playlists_with_counts()
    return [_playlist_response(record, count) for record, count in rows]


@main_router.post("/playlists/m3u", status_code=201)
async def subscribe_m3u(request: M3USubscribeRequest, service: ServiceDep) -> dict:
    """
    Subscribe to an M3U playlist

    The first sync runs before responding; the subscription is dropped if it fails.
    """
    logger.info("M3U subscription requested via API")
    channels = await service.subscribe_m3u(request.title, request.url)
    return {"url": request.url.strip(), "channels": channels}


@main_router.post("/playlists/xtream", status_code=201)
async def subscribe_xtream(request: XtreamSubscribeRequest, service: ServiceDep) -> dict:
    """Subscribe to an Xtream panel listing"""
    logger.info("Xtream subscription requested via API")
    channels = await service.subscribe_xtream(
        request.title,
        request.base_url,
        request.username,
        request.password,
        request.kind,
    )
    return {"kind": request.kind.value, "channels": channels}


@main_router.post("/playlists/refresh")
async def refresh_playlist(request: PlaylistRef, service: ServiceDep) -> dict:
    """
    Manually trigger a playlist refresh

    Joins the in-flight pass if one is already running for this playlist.
    """
    logger.info("Manual playlist refresh triggered via API")
    report = await service.refresh(request.url)
    return report.to_dict()


@main_router.delete("/playlists")
async def unsubscribe(url: Annotated[str, Query(min_length=1)], service: ServiceDep) -> dict:
    """Remove a playlist with its channels and flags"""
    record = await service.unsubscribe(url)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Playlist not found: {url}")
    return {"deleted": record.url}


@main_router.patch("/playlists")
async def edit_playlist(request: PlaylistEditRequest, service: ServiceDep) -> dict:
    """Rename a playlist or change its user agent"""
    if request.title is not None:
        await service.edit_title(request.url, request.title)
    if request.user_agent is not None:
        await service.edit_user_agent(request.url, request.user_agent)
    return {"updated": request.url}


@main_router.post("/playlists/categories/pin", response_model=CategoryFlagResponse)
async def pin_category(request: CategoryToggleRequest, service: ServiceDep) -> CategoryFlagResponse:
    flag = await service.pin_or_unpin_category(request.playlist_url, request.category)
    return _category_response(request, flag)


@main_router.post("/playlists/categories/hide", response_model=CategoryFlagResponse)
async def hide_category(request: CategoryToggleRequest, service: ServiceDep) -> CategoryFlagResponse:
    flag = await service.hide_or_unhide_category(request.playlist_url, request.category)
    return _category_response(request, flag)


@main_router.post("/playlists/channels/favorite")
async def favorite_channel(request: ChannelFlagRequest, service: ServiceDep) -> dict:
    await service.set_favorite(request.playlist_url, request.channel_id, request.value)
    return {"channel_id": request.channel_id, "favorite": request.value}


@main_router.post("/playlists/channels/mute")
async def mute_channel(request: ChannelFlagRequest, service: ServiceDep) -> dict:
    await service.set_muted(request.playlist_url, request.channel_id, request.value)
    return {"channel_id": request.channel_id, "muted": request.value}


@main_router.get("/playlists/episodes", response_model=list[EpisodeResponse])
async def read_episodes(
    playlist_url: Annotated[str, Query(min_length=1)],
    series_id: Annotated[str, Query(min_length=1)],
    service: ServiceDep
) -> list[EpisodeResponse]:
    """Fetch the episodes of an Xtream series on demand"""
    episodes = await service.read_episodes(playlist_url, series_id)
    return [
        EpisodeResponse(
            episode_id=episode.episode_id,
            season=episode.season,
            episode_num=episode.episode_num,
            title=episode.title,
            url=episode.url,
        )
        for episode in episodes
    ]


@main_router.get("/backup")
async def export_backup(service: ServiceDep) -> Response:
    """Export playlists and user flags as a JSON document"""
    document = await service.export_backup()
    return Response(content=document, media_type="application/json")


@main_router.post("/backup")
async def import_backup(request: Request, service: ServiceDep) -> dict:
    """
    Import a backup document

    Existing playlists and flags are kept; only missing entries are added.
    """
    summary = await service.import_backup(await request.body())
    return summary.to_dict()


@main_router.post("/epg/fetch")
async def fetch_epg(request: EPGFetchRequest, service: ServiceDep) -> dict:
    """
    Manually trigger an EPG fetch

    Skipped while the stored guide still covers the current time unless forced.
    """
    logger.info("Manual EPG fetch triggered via API")
    report = await service.fetch_epg(request.epg_url, force=request.force)
    return report.to_dict()


@main_router.post("/epg/link")
async def link_epg(request: EPGLinkRequest, service: ServiceDep) -> dict:
    await service.add_epg_to_playlist(request.epg_url, request.playlist_url)
    return {"linked": True}


@main_router.delete("/epg/link")
async def unlink_epg(
    epg_url: Annotated[str, Query(min_length=1)],
    playlist_url: Annotated[str, Query(min_length=1)],
    service: ServiceDep
) -> dict:
    removed = await service.remove_epg_from_playlist(epg_url, playlist_url)
    return {"linked": False, "removed": removed}


@main_router.delete("/epg")
async def delete_epg(epg_url: Annotated[str, Query(min_length=1)], service: ServiceDep) -> dict:
    """Delete an EPG source with its programmes and playlist links"""
    programmes = await service.delete_epg_source(epg_url)
    return {"deleted": epg_url, "programmes_removed": programmes}


@main_router.post("/epg/programmes", response_model=GuideResponse)
async def get_programmes(request: ProgrammeRequest, service: ServiceDep) -> GuideResponse:
    """
    Get the guide of one channel

    Programmes come from every EPG source linked to the channel's playlist,
    with timestamps converted to the requested timezone.
    """
    programmes = await service.get_programmes(
        request.playlist_url,
        request.channel_id,
        parse_iso8601_to_utc(request.from_date),
        parse_iso8601_to_utc(request.to_date),
    )
    tz = ZoneInfo(request.timezone)

    return GuideResponse(
        timestamp=utc_now().isoformat(),
        timezone=request.timezone,
        playlist_url=request.playlist_url,
        channel_id=request.channel_id,
        total_programs=len(programmes),
        programs=[
            ProgramResponse(
                start_time=programme.start_time.astimezone(tz).isoformat(),
                stop_time=programme.stop_time.astimezone(tz).isoformat(),
                title=programme.title,
                description=programme.description,
                icon=programme.icon,
            )
            for programme in programmes
        ],
    )


@main_router.get("/status")
async def sync_status(
    service: ServiceDep,
    playlist_url: Annotated[str | None, Query()] = None,
    epg_url: Annotated[str | None, Query()] = None
) -> dict:
    """Sync state of a playlist or an EPG source"""
    if bool(playlist_url) == bool(epg_url):
        raise HTTPException(status_code=400, detail="Provide exactly one of playlist_url or epg_url")
    if playlist_url:
        status = await service.playlist_status(playlist_url)
    else:
        status = service.epg_status(epg_url)
    return status.to_dict()

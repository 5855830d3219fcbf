"""
Playlist sync tests against a temporary SQLite store.

Each scenario runs in its own event loop through asyncio.run.
"""
import asyncio
import json

import pytest

from iptv_sync.errors import (
    ChannelNotFoundError,
    FetchError,
    InvalidRequestError,
    MalformedContentError,
    PlaylistConflictError,
    PlaylistNotFoundError,
)
from iptv_sync.parsers.xtream_parser import category_list_url, playlist_url_for, stream_list_url
from iptv_sync.services.playlist_service import PlaylistService
from iptv_sync.services.sync_coordinator import SyncCoordinator, SyncState
from iptv_sync.services.sync_types import SourceKind, XtreamCredentials

PLAYLIST_URL = "http://lists.example/tv/main.m3u"
EPG_URL = "http://epg.example/guide.xml"


def m3u(*entries: tuple[str, str, str]) -> str:
    """Build a playlist from (tvg-id, title, group) tuples."""
    lines = [f'#EXTM3U x-tvg-url="{EPG_URL}"']
    for tvg_id, title, group in entries:
        lines.append(f'#EXTINF:-1 tvg-id="{tvg_id}" group-title="{group}",{title}')
        lines.append(f"http://streams.example/{tvg_id}.ts")
    return "\n".join(lines) + "\n"


FULL = m3u(("bbc", "BBC", "News"), ("cnn", "CNN", "News"), ("espn", "ESPN", "Sports"))


def snapshot(channels):
    return [(c.channel_id, c.title, c.url, c.category, c.favorite, c.muted) for c in channels]


class TestSubscribe:
    """Subscription lifecycle"""

    def test_subscribe_stores_channels_categories_and_epg_links(self, service, store, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            count = await service.subscribe_m3u("Main", PLAYLIST_URL)
            playlist = await store.get_playlist(PLAYLIST_URL)
            channels = await store.list_channels(PLAYLIST_URL)
            flags = await store.load_category_flags(PLAYLIST_URL)
            return count, playlist, channels, flags

        count, playlist, channels, flags = asyncio.run(scenario())

        assert count == 3
        assert playlist.title == "Main"
        assert playlist.epg_urls == [EPG_URL]
        assert playlist.last_sync_at is not None
        assert playlist.is_refreshing is False
        assert {c.channel_id for c in channels} == {"bbc", "cnn", "espn"}
        assert set(flags) == {"News", "Sports"}
        assert not any(f.pinned or f.hidden for f in flags.values())

    def test_duplicate_subscription_conflicts(self, service, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            await service.subscribe_m3u("Again", PLAYLIST_URL)

        with pytest.raises(PlaylistConflictError):
            asyncio.run(scenario())

    def test_failed_first_sync_leaves_no_subscription(self, service, store, fetcher):
        fetcher.responses[PLAYLIST_URL] = FetchError(PLAYLIST_URL, "HTTP 503")

        async def scenario():
            with pytest.raises(FetchError):
                await service.subscribe_m3u("Main", PLAYLIST_URL)
            return await store.get_playlist(PLAYLIST_URL)

        assert asyncio.run(scenario()) is None

    def test_xtream_subscription_fetches_both_listings(self, service, store, fetcher):
        credentials = XtreamCredentials("http://panel.example", "alice", "pw")
        fetcher.responses[category_list_url(credentials, SourceKind.XTREAM_LIVE)] = json.dumps(
            [{"category_id": "1", "category_name": "News"}]
        )
        fetcher.responses[stream_list_url(credentials, SourceKind.XTREAM_LIVE)] = json.dumps(
            [{"stream_id": 1, "name": "One", "category_id": "1"}, {"stream_id": 2, "name": "Two"}]
        )
        url = playlist_url_for(credentials, SourceKind.XTREAM_LIVE)

        async def scenario():
            count = await service.subscribe_xtream("Panel", "http://panel.example/", "alice", "pw", "xtream-live")
            return count, await store.get_playlist(url), await store.list_channels(url)

        count, playlist, channels = asyncio.run(scenario())

        assert count == 2
        assert playlist.credentials == credentials
        assert playlist.kind is SourceKind.XTREAM_LIVE
        assert {c.url for c in channels} == {
            "http://panel.example/live/alice/pw/1.ts",
            "http://panel.example/live/alice/pw/2.ts",
        }

    def test_failed_xtream_listing_cancels_the_other_fetch(self, store, clock):
        credentials = XtreamCredentials("http://panel.example", "alice", "pw")
        categories_url = category_list_url(credentials, SourceKind.XTREAM_LIVE)
        streams_url = stream_list_url(credentials, SourceKind.XTREAM_LIVE)
        finished = []

        class SlowStreamsFetcher:
            async def fetch(self, url, user_agent=None):
                if url == categories_url:
                    raise FetchError(url, "HTTP 503")
                await asyncio.sleep(0.3)
                finished.append(url)
                return b"[]"

        service = PlaylistService(store, SlowStreamsFetcher(), clock)

        async def scenario():
            with pytest.raises(FetchError):
                await service.subscribe_xtream("Panel", "http://panel.example", "alice", "pw", "xtream-live")
            await asyncio.sleep(0.5)
            return await store.get_playlist(playlist_url_for(credentials, SourceKind.XTREAM_LIVE))

        assert asyncio.run(scenario()) is None
        assert finished == []

    def test_invalid_subscription_input_is_typed(self, service):
        with pytest.raises(InvalidRequestError):
            asyncio.run(service.subscribe_m3u("Main", "   "))
        with pytest.raises(InvalidRequestError):
            asyncio.run(service.subscribe_xtream("Panel", "http://panel.example", "alice", "pw", "m3u"))
        with pytest.raises(InvalidRequestError):
            asyncio.run(service.subscribe_xtream("Panel", "http://panel.example", "alice", "pw", "bogus"))

    def test_unsubscribe_removes_everything(self, service, store, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            removed = await service.unsubscribe(PLAYLIST_URL)
            return (
                removed,
                await store.get_playlist(PLAYLIST_URL),
                await store.list_channels(PLAYLIST_URL),
                await store.load_category_flags(PLAYLIST_URL),
                await service.unsubscribe(PLAYLIST_URL),
            )

        removed, playlist, channels, flags, second = asyncio.run(scenario())

        assert removed.url == PLAYLIST_URL
        assert playlist is None
        assert channels == []
        assert flags == {}
        assert second is None


class TestRefresh:
    """Sync pass semantics"""

    def test_refresh_is_idempotent(self, service, store, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            before = snapshot(await store.list_channels(PLAYLIST_URL))
            report = await service.refresh(PLAYLIST_URL)
            after = snapshot(await store.list_channels(PLAYLIST_URL))
            return before, after, report

        before, after, report = asyncio.run(scenario())

        assert before == after
        assert report.channels_added == 0
        assert report.channels_removed == 0
        assert report.channels_updated == 3

    def test_user_flags_survive_refresh(self, service, store, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            await service.set_favorite(PLAYLIST_URL, "bbc", True)
            await service.set_muted(PLAYLIST_URL, "espn", True)
            fetcher.responses[PLAYLIST_URL] = m3u(
                ("bbc", "BBC One", "News"), ("cnn", "CNN", "News"), ("espn", "ESPN", "Sports")
            )
            await service.refresh(PLAYLIST_URL)
            return await store.load_channels(PLAYLIST_URL)

        channels = asyncio.run(scenario())

        assert channels["bbc"].favorite is True
        assert channels["bbc"].title == "BBC One"
        assert channels["espn"].muted is True
        assert channels["cnn"].favorite is False

    def test_channels_missing_upstream_are_deleted(self, service, store, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            await service.set_favorite(PLAYLIST_URL, "cnn", True)
            fetcher.responses[PLAYLIST_URL] = m3u(("bbc", "BBC", "News"), ("espn", "ESPN", "Sports"))
            report = await service.refresh(PLAYLIST_URL)
            return report, await store.load_channels(PLAYLIST_URL)

        report, channels = asyncio.run(scenario())

        assert set(channels) == {"bbc", "espn"}
        assert report.channels_removed == 1

    def test_failed_refresh_keeps_last_good_data(self, service, store, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            fetcher.responses[PLAYLIST_URL] = FetchError(PLAYLIST_URL, "timed out")
            with pytest.raises(FetchError):
                await service.refresh(PLAYLIST_URL)
            return (
                await store.list_channels(PLAYLIST_URL),
                await store.get_playlist(PLAYLIST_URL),
                await service.playlist_status(PLAYLIST_URL),
            )

        channels, playlist, status = asyncio.run(scenario())

        assert len(channels) == 3
        assert playlist.is_refreshing is False
        assert "timed out" in playlist.last_error
        assert status.state is SyncState.IDLE
        assert status.succeeded is False

    def test_malformed_content_is_reported_and_nothing_changes(self, service, store, fetcher):
        credentials = XtreamCredentials("http://panel.example", "bob", "pw")
        categories_url = category_list_url(credentials, SourceKind.XTREAM_VOD)
        streams_url = stream_list_url(credentials, SourceKind.XTREAM_VOD)
        fetcher.responses[categories_url] = "[]"
        fetcher.responses[streams_url] = json.dumps([{"stream_id": 1, "name": "Film"}])
        url = playlist_url_for(credentials, SourceKind.XTREAM_VOD)

        async def scenario():
            await service.subscribe_xtream("VOD", "http://panel.example", "bob", "pw", SourceKind.XTREAM_VOD)
            fetcher.responses[streams_url] = '{"error": "not a list"}'
            with pytest.raises(MalformedContentError):
                await service.refresh(url)
            return await store.list_channels(url), await store.get_playlist(url)

        channels, playlist = asyncio.run(scenario())

        assert [c.title for c in channels] == ["Film"]
        assert playlist.last_error is not None

    def test_next_successful_refresh_clears_error(self, service, store, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            fetcher.responses[PLAYLIST_URL] = FetchError(PLAYLIST_URL, "HTTP 500")
            with pytest.raises(FetchError):
                await service.refresh(PLAYLIST_URL)
            fetcher.responses[PLAYLIST_URL] = FULL
            await service.refresh(PLAYLIST_URL)
            return await store.get_playlist(PLAYLIST_URL)

        assert asyncio.run(scenario()).last_error is None

    def test_progress_reports_monotonic_counts(self, service, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL
        seen = []

        asyncio.run(service.subscribe_m3u("Main", PLAYLIST_URL, progress=seen.append))

        assert seen == [2, 3]

    def test_refresh_unknown_playlist(self, service):
        with pytest.raises(PlaylistNotFoundError):
            asyncio.run(service.refresh("http://nowhere/list.m3u"))

    def test_user_agent_is_sent(self, service, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            await service.edit_user_agent(PLAYLIST_URL, "VLC/3.0")
            await service.refresh(PLAYLIST_URL)

        asyncio.run(scenario())

        assert fetcher.user_agents == [None, "VLC/3.0"]


class TestMutualExclusion:
    """At most one pass per playlist"""

    def test_concurrent_refreshes_share_one_pass(self, service, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            fetcher.started = asyncio.Event()
            fetcher.gate = asyncio.Event()

            first = asyncio.create_task(service.refresh(PLAYLIST_URL))
            await fetcher.started.wait()
            second = asyncio.create_task(service.refresh(PLAYLIST_URL))
            # Let the second caller reach the coordinator before releasing
            await asyncio.sleep(0.2)
            assert service.playlist_coordinator.is_syncing(PLAYLIST_URL)
            fetcher.gate.set()
            return await asyncio.gather(first, second)

        first, second = asyncio.run(scenario())

        assert fetcher.count(PLAYLIST_URL) == 2  # subscribe + one shared refresh
        assert first is second

    def test_coordinator_shares_result_and_failure(self):
        async def scenario():
            coordinator = SyncCoordinator()
            release = asyncio.Event()
            runs = []

            async def work():
                runs.append(1)
                await release.wait()
                raise FetchError("http://x", "boom")

            first = asyncio.create_task(coordinator.execute("k", work))
            await asyncio.sleep(0)
            second = asyncio.create_task(coordinator.execute("k", work))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            release.set()
            results = await asyncio.gather(first, second, return_exceptions=True)
            return runs, results, coordinator.status("k"), coordinator.is_syncing("k")

        runs, results, status, syncing = asyncio.run(scenario())

        assert runs == [1]
        assert all(isinstance(result, FetchError) for result in results)
        assert status.succeeded is False
        assert status.error == "Failed to fetch http://x: boom"
        assert syncing is False

    def test_distinct_keys_run_in_parallel(self):
        async def scenario():
            coordinator = SyncCoordinator()
            both_running = asyncio.Event()
            active = []

            async def work(name):
                active.append(name)
                if len(active) == 2:
                    both_running.set()
                await asyncio.wait_for(both_running.wait(), timeout=1)
                return name

            return await asyncio.gather(
                coordinator.execute("a", lambda: work("a")),
                coordinator.execute("b", lambda: work("b")),
            )

        assert asyncio.run(scenario()) == ["a", "b"]


class TestCancellation:
    """Abandoned passes and crash recovery"""

    def test_cancelled_refresh_commits_nothing(self, service, store, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            before = snapshot(await store.list_channels(PLAYLIST_URL))

            fetcher.responses[PLAYLIST_URL] = m3u(("bbc", "BBC Renamed", "News"))
            fetcher.started = asyncio.Event()
            fetcher.gate = asyncio.Event()
            refresh = asyncio.create_task(service.refresh(PLAYLIST_URL))
            await fetcher.started.wait()

            cancelled = await service.playlist_coordinator.cancel(PLAYLIST_URL)
            with pytest.raises(asyncio.CancelledError):
                await refresh

            return (
                cancelled,
                before,
                snapshot(await store.list_channels(PLAYLIST_URL)),
                await store.get_playlist(PLAYLIST_URL),
                service.playlist_coordinator.is_syncing(PLAYLIST_URL),
                service.playlist_coordinator.status(PLAYLIST_URL),
            )

        cancelled, before, after, playlist, syncing, status = asyncio.run(scenario())

        assert cancelled is True
        assert after == before
        assert playlist.is_refreshing is False
        assert syncing is False
        assert status.state is SyncState.IDLE
        assert status.error == "cancelled"

    def test_startup_reset_clears_stale_refreshing_flags(self, service, store, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            await store.mark_refreshing(PLAYLIST_URL)
            stale = await store.get_playlist(PLAYLIST_URL)
            reset = await store.reset_refreshing_flags()
            again = await store.reset_refreshing_flags()
            return stale, reset, again, await store.get_playlist(PLAYLIST_URL)

        stale, reset, again, playlist = asyncio.run(scenario())

        assert stale.is_refreshing is True
        assert reset == 1
        assert again == 0
        assert playlist.is_refreshing is False


class TestCategoryFlags:
    """Pinned/hidden category state"""

    def test_toggle_flips_and_survives_disappearance(self, service, store, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            pinned = await service.pin_or_unpin_category(PLAYLIST_URL, "Sports")
            hidden = await service.hide_or_unhide_category(PLAYLIST_URL, "News")

            fetcher.responses[PLAYLIST_URL] = m3u(("bbc", "BBC", "News"))
            await service.refresh(PLAYLIST_URL)
            while_absent = await store.load_category_flags(PLAYLIST_URL)

            fetcher.responses[PLAYLIST_URL] = FULL
            await service.refresh(PLAYLIST_URL)
            after_return = await store.load_category_flags(PLAYLIST_URL)
            return pinned, hidden, while_absent, after_return

        pinned, hidden, while_absent, after_return = asyncio.run(scenario())

        assert pinned.pinned is True
        assert hidden.hidden is True
        assert while_absent["Sports"].pinned is True
        assert after_return["Sports"].pinned is True
        assert after_return["News"].hidden is True

    def test_toggling_twice_restores_default(self, service, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            await service.pin_or_unpin_category(PLAYLIST_URL, "News")
            return await service.pin_or_unpin_category(PLAYLIST_URL, "News")

        assert asyncio.run(scenario()).pinned is False

    def test_toggle_on_absent_category_is_noop(self, service, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            return await service.pin_or_unpin_category(PLAYLIST_URL, "Cooking")

        assert asyncio.run(scenario()) is None

    def test_toggle_on_unknown_playlist_raises(self, service):
        with pytest.raises(PlaylistNotFoundError):
            asyncio.run(service.pin_or_unpin_category("http://nowhere", "News"))

    def test_flag_on_unknown_channel_raises(self, service, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            await service.set_favorite(PLAYLIST_URL, "missing", True)

        with pytest.raises(ChannelNotFoundError):
            asyncio.run(scenario())

    def test_list_flags_sorted_by_category(self, service, fetcher):
        fetcher.responses[PLAYLIST_URL] = FULL

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            await service.hide_or_unhide_category(PLAYLIST_URL, "Sports")
            return await service.categories.list_flags(PLAYLIST_URL)

        flags = asyncio.run(scenario())

        assert [(f.category, f.hidden) for f in flags] == [("News", False), ("Sports", True)]

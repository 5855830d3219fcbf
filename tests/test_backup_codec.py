"""
Backup export/import tests.
"""
import asyncio
import json

import pytest

from iptv_sync.errors import MalformedContentError
from iptv_sync.services.backup_codec import export_document, import_document, to_records
from iptv_sync.services.playlist_service import PlaylistService
from iptv_sync.services.sync_types import (
    CategoryFlagRecord,
    ChannelFlagRecord,
    PlaylistRecord,
    SourceKind,
    XtreamCredentials,
)

PLAYLIST_URL = "http://lists.example/main.m3u"
CONTENT = (
    '#EXTM3U x-tvg-url="http://epg.example/guide.xml"\n'
    '#EXTINF:-1 tvg-id="bbc" group-title="News",BBC\nhttp://streams.example/bbc.ts\n'
    '#EXTINF:-1 tvg-id="espn" group-title="Sports",ESPN\nhttp://streams.example/espn.ts\n'
)


class TestCodec:
    """Pure encode/decode"""

    def test_export_is_deterministic_and_sorted(self):
        playlists = [
            PlaylistRecord(url="http://b", title="B", kind=SourceKind.M3U),
            PlaylistRecord(url="http://a", title="A", kind=SourceKind.M3U, epg_urls=["http://e2", "http://e1"]),
        ]
        categories = [
            CategoryFlagRecord("http://a", "Sports", pinned=True),
            CategoryFlagRecord("http://a", "News", hidden=True),
        ]
        channels = [
            ChannelFlagRecord("http://a", "z", favorite=True),
            ChannelFlagRecord("http://a", "y", muted=True),
            ChannelFlagRecord("http://a", "x"),
        ]

        first = export_document(playlists, categories, channels)
        second = export_document(list(reversed(playlists)), list(reversed(categories)), channels[::-1])
        decoded = json.loads(first)

        assert first == second
        assert [block["playlist"]["url"] for block in decoded["playlists"]] == ["http://a", "http://b"]
        block = decoded["playlists"][0]
        assert block["playlist"]["epg_urls"] == ["http://e1", "http://e2"]
        assert [c["name"] for c in block["categories"]] == ["News", "Sports"]
        assert [c["channel_id"] for c in block["channels"]] == ["y", "z"]

    def test_xtream_credentials_round_trip(self):
        credentials = XtreamCredentials("http://panel", "alice", "pw")
        playlist = PlaylistRecord(url="http://panel/api", title="P", kind=SourceKind.XTREAM_VOD, credentials=credentials)

        playlists, _, _ = to_records(import_document(export_document([playlist], [], [])))

        assert playlists[0].credentials == credentials
        assert playlists[0].kind is SourceKind.XTREAM_VOD

    @pytest.mark.parametrize("document", [
        "not json",
        '{"version": 99, "playlists": []}',
        '{"playlists": [{"playlist": {"url": "http://x", "title": "X", "kind": "xtream-live"}}]}',
        '{"playlists": [{"playlist": {"url": "http://x", "title": "X", "kind": "m3u"}},'
        ' {"playlist": {"url": "http://x", "title": "Y", "kind": "m3u"}}]}',
    ])
    def test_invalid_documents_are_rejected(self, document):
        with pytest.raises(MalformedContentError):
            import_document(document)

    def test_empty_document_is_valid(self):
        assert import_document('{"version": 1, "playlists": []}').playlists == []


class TestRestore:
    """Round trip through storage"""

    def test_round_trip_into_empty_store(self, service, fetcher, clock, make_store):
        fetcher.responses[PLAYLIST_URL] = CONTENT

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            await service.set_favorite(PLAYLIST_URL, "bbc", True)
            await service.pin_or_unpin_category(PLAYLIST_URL, "Sports")
            exported = await service.export_backup()

            restored = PlaylistService(await make_store("restored"), fetcher, clock)
            summary = await restored.import_backup(exported)
            re_exported = await restored.export_backup()

            await restored.refresh(PLAYLIST_URL)
            channels = await restored.store.load_channels(PLAYLIST_URL)
            after_sync = await restored.export_backup()
            return exported, summary, re_exported, channels, after_sync

        exported, summary, re_exported, channels, after_sync = asyncio.run(scenario())

        assert re_exported == exported
        assert after_sync == exported
        assert summary.playlists_added == 1
        assert summary.categories_added == 2
        assert summary.channel_flags_added == 1
        assert channels["bbc"].favorite is True
        assert channels["espn"].favorite is False

    def test_import_is_additive_and_store_wins(self, service, fetcher):
        fetcher.responses[PLAYLIST_URL] = CONTENT
        document = json.dumps({
            "version": 1,
            "playlists": [
                {
                    "playlist": {"url": PLAYLIST_URL, "title": "Renamed", "kind": "m3u"},
                    "categories": [{"name": "Sports", "pinned": True}, {"name": "Kids", "hidden": True}],
                    "channels": [{"channel_id": "bbc", "muted": True}],
                },
                {"playlist": {"url": "http://other/list.m3u", "title": "Other", "kind": "m3u"}},
            ],
        })

        async def scenario():
            await service.subscribe_m3u("Main", PLAYLIST_URL)
            summary = await service.import_backup(document)
            return (
                summary,
                await service.store.get_playlist(PLAYLIST_URL),
                await service.store.load_category_flags(PLAYLIST_URL),
                await service.store.get_channel(PLAYLIST_URL, "bbc"),
                await service.store.get_playlist("http://other/list.m3u"),
            )

        summary, playlist, flags, bbc, other = asyncio.run(scenario())

        assert summary.playlists_added == 1
        assert summary.playlists_merged == 1
        assert summary.categories_added == 1
        assert summary.channel_flags_added == 0
        assert playlist.title == "Main"
        assert flags["Sports"].pinned is False
        assert flags["Kids"].hidden is True
        assert bbc.muted is False
        assert other.title == "Other"

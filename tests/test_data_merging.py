"""
Merge tests for channel snapshots and programme sets.
"""
from datetime import datetime, timedelta, timezone

from iptv_sync.services.sync_types import ChannelPayload, ProgrammePayload
from iptv_sync.utils.data_merging import merge_channels, merge_programme_sets, merge_programmes

SEEN_AT = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
BASE = datetime(2025, 1, 15, tzinfo=timezone.utc)


def channel(channel_id: str, category: str = "News", **kwargs) -> ChannelPayload:
    return ChannelPayload(
        channel_id=channel_id,
        playlist_url="http://list",
        title=kwargs.pop("title", channel_id.upper()),
        url=f"http://streams/{channel_id}.ts",
        category=category,
        **kwargs,
    )


def programme(channel_id: str, start_hour: float, stop_hour: float, title: str) -> ProgrammePayload:
    return ProgrammePayload(
        channel_id=channel_id,
        start_time=BASE + timedelta(hours=start_hour),
        stop_time=BASE + timedelta(hours=stop_hour),
        title=title,
    )


class TestMergeChannels:
    """Full-replace channel merge"""

    def test_flags_carry_over_and_fields_refresh(self):
        existing = {"a": channel("a", favorite=True, muted=True, title="Old")}
        result = merge_channels(existing, [channel("a", title="New")], seen_at=SEEN_AT, known_categories={"News"})

        merged = result.channels[0]
        assert merged.title == "New"
        assert merged.favorite is True
        assert merged.muted is True
        assert merged.last_seen_at == SEEN_AT
        assert (result.added, result.updated) == (0, 1)

    def test_absent_channels_are_removed(self):
        existing = {"a": channel("a"), "b": channel("b"), "c": channel("c")}
        result = merge_channels(existing, [channel("b")], seen_at=SEEN_AT, known_categories=set())

        assert result.removed_ids == ["a", "c"]
        assert [c.channel_id for c in result.channels] == ["b"]

    def test_new_channels_default_flags_or_pending(self):
        result = merge_channels(
            {},
            [channel("a", favorite=True), channel("b")],
            seen_at=SEEN_AT,
            known_categories=set(),
            pending_flags={"b": (True, False)},
        )

        a, b = result.channels
        assert (a.favorite, a.muted) == (False, False)
        assert (b.favorite, b.muted) == (True, False)
        assert result.added == 2

    def test_new_categories_reported_once_in_order(self):
        incoming = [channel("a", "Sports"), channel("b", "News"), channel("c", "Sports"), channel("d", "Kids")]
        result = merge_channels({}, incoming, seen_at=SEEN_AT, known_categories={"News"})

        assert result.new_categories == ["Sports", "Kids"]

    def test_progress_is_monotonic_and_ends_at_total(self):
        calls = []
        merge_channels(
            {},
            [channel(str(i)) for i in range(5)],
            seen_at=SEEN_AT,
            known_categories=set(),
            progress=calls.append,
            progress_step=2,
        )

        assert calls == [2, 4, 5]

    def test_progress_not_repeated_on_exact_multiple(self):
        calls = []
        merge_channels(
            {},
            [channel(str(i)) for i in range(4)],
            seen_at=SEEN_AT,
            known_categories=set(),
            progress=calls.append,
            progress_step=2,
        )

        assert calls == [2, 4]


class TestMergeProgrammes:
    """Overlap resolution between stored and fetched programmes"""

    def test_fetched_replaces_overlapping_stored(self):
        existing = [programme("c", 8, 9, "Early"), programme("c", 9, 10, "Old nine"), programme("c", 12, 13, "Noon")]
        incoming = [programme("c", 9.5, 11, "New")]

        merged = merge_programmes(existing, incoming)

        assert [p.title for p in merged] == ["Early", "New", "Noon"]

    def test_adjacent_intervals_do_not_overlap(self):
        merged = merge_programmes([programme("c", 8, 9, "Stored")], [programme("c", 9, 10, "Fetched")])

        assert [p.title for p in merged] == ["Stored", "Fetched"]

    def test_earliest_fetched_wins_among_overlaps(self):
        incoming = [programme("c", 10, 12, "Second"), programme("c", 9, 11, "First")]

        merged = merge_programmes([], incoming)

        assert [p.title for p in merged] == ["First"]

    def test_sets_merge_per_channel(self):
        existing = [programme("a", 8, 9, "A stored"), programme("b", 8, 9, "B stored")]
        incoming = [programme("b", 8.5, 9.5, "B fetched")]

        merged = merge_programme_sets(existing, incoming)

        assert [(p.channel_id, p.title) for p in merged] == [("a", "A stored"), ("b", "B fetched")]

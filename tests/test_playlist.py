import math

import m3u8
import pytest

from playlist import (count_ready_segments, is_complete_playlist,
                      rewrite_playlist, synthesize_playlist)


class TestSynthesizePlaylist:
    def test_ten_seconds_in_four_second_segments(self):
        content = synthesize_playlist("42", 10.0, 4.0)
        lines = content.split("\n")

        assert lines[0] == "#EXTM3U"
        assert "#EXT-X-TARGETDURATION:4" in lines
        assert "#EXT-X-PLAYLIST-TYPE:VOD" in lines
        assert lines[-1] == "#EXT-X-ENDLIST"

        extinf = [line for line in lines if line.startswith("#EXTINF:")]
        assert extinf == ["#EXTINF:4.000,", "#EXTINF:4.000,", "#EXTINF:2.000,"]
        uris = [line for line in lines if line and not line.startswith("#")]
        assert uris == [
            "/stream/movies/42/segment_00000.ts",
            "/stream/movies/42/segment_00001.ts",
            "/stream/movies/42/segment_00002.ts",
        ]

    @pytest.mark.parametrize("total,segment", [
        (10.0, 4.0), (8.0, 4.0), (0.05, 4.0), (3600.5, 6.0), (7.3, 2.5), (1.0, 1.0),
    ])
    def test_durations_sum_to_total(self, total, segment):
        playlist = m3u8.loads(synthesize_playlist("7", total, segment))

        expected_count = max(1, math.ceil(total / segment))
        assert len(playlist.segments) == expected_count
        assert playlist.is_endlist
        assert playlist.target_duration == math.ceil(segment)
        assert playlist.segments[-1].duration >= 0.1
        if total >= 0.1:
            assert sum(s.duration for s in playlist.segments) == pytest.approx(total, abs=0.001)

    def test_zero_duration_yields_single_short_segment(self):
        playlist = m3u8.loads(synthesize_playlist("7", 0.0, 4.0))
        assert len(playlist.segments) == 1
        assert playlist.segments[0].duration == pytest.approx(0.1)


class TestRewritePlaylist:
    def test_rewrites_bare_segment_and_key_names_only(self):
        raw = "\n".join([
            "#EXTM3U",
            "#EXT-X-VERSION:3",
            '#EXT-X-KEY:METHOD=AES-128,URI="enc.key"',
            "#EXTINF:4.000,",
            "segment_00003.ts",
            "#EXTINF:4.000,",
            "  segment_00004.ts  ",
            "enc.key",
            "http://cdn.example.com/segment_00005.ts",
            "sub/segment_00006.ts",
            "",
        ])

        lines = rewrite_playlist("42", raw).split("\n")

        assert lines[0] == "#EXTM3U"
        assert lines[2] == '#EXT-X-KEY:METHOD=AES-128,URI="enc.key"'
        assert lines[4] == "/stream/movies/42/segment_00003.ts"
        assert lines[6] == "/stream/movies/42/segment_00004.ts"
        assert lines[7] == "/stream/movies/42/enc.key"
        assert lines[8] == "http://cdn.example.com/segment_00005.ts"
        assert lines[9] == "sub/segment_00006.ts"
        assert lines[10] == ""


class TestPlaylistInspection:
    LIVE = "#EXTM3U\n#EXT-X-TARGETDURATION:4\n#EXTINF:4.0,\nsegment_00000.ts\n"

    def test_count_ready_segments(self):
        assert count_ready_segments(self.LIVE) == 1
        assert count_ready_segments("#EXTM3U\n#EXT-X-TARGETDURATION:4\n") == 0

    def test_is_complete_playlist(self):
        assert not is_complete_playlist(self.LIVE)
        assert is_complete_playlist(self.LIVE + "#EXT-X-ENDLIST\n")

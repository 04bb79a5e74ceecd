import json

import pytest

from segmerge.merge_tool.loaders import DEFAULT_SPEAKER, load_segments, split_speaker

SRT_TEXT = """1
00:00:00,000 --> 00:00:01,500
Alice: So what we're trying to

2
00:00:01,700 --> 00:00:03,000
achieve here is better

3
00:00:03,200 --> 00:00:04,000
[Bob]: Right.
"""


def test_srt_segments_with_speaker_prefixes(tmp_path):
    path = tmp_path / "talk.srt"
    path.write_text(SRT_TEXT, encoding="utf-8")
    segments = load_segments(path)
    assert [segment.id for segment in segments] == ["1", "2", "3"]
    assert [segment.speaker for segment in segments] == ["Alice", DEFAULT_SPEAKER, "Bob"]
    assert segments[0].text == "So what we're trying to"
    assert segments[1].start == pytest.approx(1.7)
    assert segments[2].end == pytest.approx(4.0)


def test_json_segments(tmp_path):
    path = tmp_path / "talk.json"
    path.write_text(
        json.dumps(
            {
                "segments": [
                    {"id": "a", "text": "hello", "speaker": "S1", "start": 0, "end": 1},
                    {"text": "world", "start": "1.2", "end": 2},
                ]
            }
        ),
        encoding="utf-8",
    )
    segments = load_segments(path)
    assert [segment.id for segment in segments] == ["a", "2"]
    assert segments[1].speaker == DEFAULT_SPEAKER
    assert segments[1].start == 1.2


def test_bad_inputs_raise_value_error(tmp_path):
    bad_json = tmp_path / "bad.json"
    bad_json.write_text("{broken", encoding="utf-8")
    not_list = tmp_path / "obj.json"
    not_list.write_text(json.dumps({"segments": "nope"}), encoding="utf-8")
    unknown = tmp_path / "talk.txt"
    unknown.write_text("hello", encoding="utf-8")
    for path in (bad_json, not_list, unknown):
        with pytest.raises(ValueError):
            load_segments(path)


def test_split_speaker():
    assert split_speaker("Bob: hi there") == ("Bob", "hi there")
    assert split_speaker("no speaker here") == (DEFAULT_SPEAKER, "no speaker here")
    assert split_speaker("[Host 1]: welcome") == ("Host 1", "welcome")

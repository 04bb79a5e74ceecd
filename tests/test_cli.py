import json
from unittest.mock import patch

import pytest

from segmerge.completion_client import CompletionClient, CompletionResult
from segmerge.config import AppConfig
from segmerge.merge_tool.__main__ import build_parser, main
from segmerge.merge_tool.cli import apply_connection_overrides, build_merge_request, default_output_path
from segmerge.merge_tool.models import ConfidenceLevel
from segmerge.token_utils import heuristic_tokens

from helpers import ok


def _write_transcript(tmp_path, count=3):
    path = tmp_path / "talk.json"
    records = [
        {"id": f"s{index}", "text": f"part {index}", "speaker": "A", "start": index * 1.2, "end": index * 1.2 + 1.0}
        for index in range(1, count + 1)
    ]
    path.write_text(json.dumps(records), encoding="utf-8")
    return path


def test_request_uses_config_defaults(tmp_path):
    transcript = _write_transcript(tmp_path)
    config = AppConfig(tmp_path / "config.json")
    args = build_parser().parse_args([str(transcript)])
    request = build_merge_request(args, config)
    assert len(request.segments) == 3
    assert request.max_time_gap == 2.0
    assert request.min_confidence is ConfidenceLevel.MEDIUM
    assert request.batch_size == 20
    assert request.concurrency == 2
    assert request.same_speaker_only and request.enable_smoothing
    assert request.prompt_token_limit == 8192
    assert not request.debug


def test_flags_override_config(tmp_path):
    transcript = _write_transcript(tmp_path)
    config = AppConfig(tmp_path / "config.json")
    args = build_parser().parse_args(
        [
            str(transcript),
            "--max-gap",
            "0.5",
            "--min-confidence",
            "low",
            "--no-same-speaker",
            "--no-smoothing",
            "--batch-size",
            "5",
            "--concurrency",
            "4",
            "--model",
            "other-model",
            "--debug",
        ]
    )
    request = build_merge_request(args, config)
    assert request.max_time_gap == 0.5
    assert request.min_confidence is ConfidenceLevel.LOW
    assert not request.same_speaker_only
    assert not request.enable_smoothing
    assert (request.batch_size, request.concurrency) == (5, 4)
    assert request.model == "other-model"
    assert request.debug


@pytest.mark.parametrize(
    "flags",
    [["--batch-size", "1"], ["--concurrency", "0"], ["--max-gap", "-1"]],
)
def test_invalid_numbers_are_rejected(tmp_path, flags):
    transcript = _write_transcript(tmp_path)
    args = build_parser().parse_args([str(transcript), *flags])
    with pytest.raises(ValueError):
        build_merge_request(args, AppConfig(tmp_path / "config.json"))


def test_missing_input_is_rejected(tmp_path):
    args = build_parser().parse_args([str(tmp_path / "absent.srt")])
    with pytest.raises(ValueError):
        build_merge_request(args, AppConfig(tmp_path / "config.json"))


def test_connection_overrides_stay_in_memory(tmp_path):
    config = AppConfig(tmp_path / "config.json")
    args = build_parser().parse_args(["x.srt", "--base-url", "http://10.0.0.5:1234/v1", "--api-key", "k"])
    apply_connection_overrides(args, config)
    assert config.get("lmstudio_base_url") == "http://10.0.0.5:1234/v1"
    assert config.get("lmstudio_api_key") == "k"
    assert not (tmp_path / "config.json").exists()


def test_default_output_path(tmp_path):
    assert default_output_path(tmp_path / "talk.srt") == tmp_path / "talk.merge.json"


def test_main_writes_report_and_log(tmp_path, capsys):
    transcript = _write_transcript(tmp_path)
    output = tmp_path / "out" / "report.json"

    def fake_execute(self, feature_id, variables, options=None):
        return ok([{"pairIndex": 1, "confidence": 0.9}])

    with patch.object(CompletionClient, "execute", fake_execute), patch(
        "segmerge.merge_tool.engine.build_token_counter", return_value=heuristic_tokens
    ):
        exit_code = main([str(transcript), "-o", str(output), "--config", str(tmp_path / "config.json")])

    assert exit_code == 0
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["summary"]["found"] == 1
    assert report["suggestions"][0]["segmentIds"] == ["s1", "s2"]
    assert "batchLog" not in report
    assert output.with_suffix(".log").exists()
    out = capsys.readouterr().out
    assert "[OK]" in out
    assert "Report saved to" in out


def test_main_returns_error_status_when_batches_fail(tmp_path):
    transcript = _write_transcript(tmp_path)
    output = tmp_path / "report.json"

    def fake_execute(self, feature_id, variables, options=None):
        return CompletionResult(success=False, error="offline", error_code="network_error")

    with patch.object(CompletionClient, "execute", fake_execute), patch(
        "segmerge.merge_tool.engine.build_token_counter", return_value=heuristic_tokens
    ):
        exit_code = main([str(transcript), "-o", str(output), "--config", str(tmp_path / "config.json"), "--debug"])

    assert exit_code == 1
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["batchLog"][0]["errorCode"] == "network_error"

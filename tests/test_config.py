import json

from segmerge.config import AppConfig, get_default_config_path


def test_defaults_when_file_is_missing(tmp_path):
    config = AppConfig(tmp_path / "config.json")
    assert config.load_warning is None
    assert config.get("merge_batch_size") == 20
    assert config.get("merge_max_time_gap") == 2.0
    assert config.get("merge_min_confidence") == "medium"
    assert config.get("providers") == {}
    assert config.get("merge_same_speaker_only") is True


def test_values_are_coerced_to_default_types(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "merge_batch_size": "12",
                "merge_max_time_gap": "1.5",
                "ai_request_concurrency": "many",
                "merge_min_confidence": "HIGH",
                "providers": ["not", "a", "dict"],
            }
        ),
        encoding="utf-8",
    )
    config = AppConfig(path)
    assert config.get("merge_batch_size") == 12
    assert config.get("merge_max_time_gap") == 1.5
    assert config.get("ai_request_concurrency") == 2
    assert config.get("merge_min_confidence") == "high"
    assert config.get("providers") == {}


def test_unknown_confidence_falls_back(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"merge_min_confidence": "certain"}), encoding="utf-8")
    assert AppConfig(path).get("merge_min_confidence") == "medium"


def test_corrupt_file_is_preserved(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    config = AppConfig(path)
    assert config.get("merge_batch_size") == 20
    assert "Failed to parse config" in config.load_warning
    assert (tmp_path / "config.json.corrupt").read_text(encoding="utf-8") == "{not json"


def test_set_persists(tmp_path):
    path = tmp_path / "nested" / "config.json"
    config = AppConfig(path)
    config.set("merge_batch_size", 8)
    assert json.loads(path.read_text(encoding="utf-8"))["merge_batch_size"] == 8
    assert AppConfig(path).get("merge_batch_size") == 8


def test_api_key_falls_back_to_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("SEGMERGE_API_KEY", "from-env")
    assert AppConfig(tmp_path / "config.json").get("lmstudio_api_key") == "from-env"


def test_config_dir_override(tmp_path, monkeypatch):
    monkeypatch.setenv("SEGMERGE_CONFIG_DIR", str(tmp_path))
    assert get_default_config_path() == tmp_path / "config.json"

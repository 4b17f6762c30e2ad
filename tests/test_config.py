import pytest

from facereco.config import RecognizerConfig, load_config


def test_dataclass_defaults():
    config = RecognizerConfig()
    assert config.mode == "learn"
    assert config.distance_threshold == pytest.approx(0.37)
    assert config.search_policy == "time"
    assert (config.min_search_ms, config.max_search_ms) == (1000, 1000)
    assert config.show_short_tracks is True


def test_yaml_values_and_cli_overrides(tmp_path):
    path = tmp_path / "facereco.yaml"
    path.write_text(
        "mode: recognize\n"
        "distance_threshold: 0.3\n"
        "search_policy: count\n"
        "search_query_count: 7\n"
        "legacy_option: 1\n",
        encoding="utf-8",
    )

    config = load_config(path, distance_threshold=0.25, mode=None)

    assert config.mode == "recognize"
    assert config.distance_threshold == pytest.approx(0.25)
    assert config.search_policy == "count"
    assert config.search_query_count == 7


def test_missing_file_falls_back_to_defaults(tmp_path):
    config = load_config(tmp_path / "missing.yaml", max_search_ms=2000)
    assert config.max_search_ms == 2000
    assert config.mode == "learn"


def test_invalid_values_are_rejected():
    with pytest.raises(ValueError):
        RecognizerConfig(mode="train")
    with pytest.raises(ValueError):
        RecognizerConfig(search_policy="forever")
    with pytest.raises(ValueError):
        RecognizerConfig(search_query_count=0)

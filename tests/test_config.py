import json

import pytest
from pydantic import ValidationError

from kbsearch import config as config_module
from kbsearch.config import CachingConfig, HybridConfig, SearchConfig, get_config, save_user_settings
from kbsearch.search.types import ExpansionMethod, SearchMode


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    monkeypatch.setattr(config_module, "SETTINGS_PATH", path)
    for key in ("KBSEARCH_DEFAULT_MODE", "KBSEARCH_OLLAMA_URL", "KBSEARCH_HYBRID__K", "KBSEARCH_RERANKING__ENABLED"):
        monkeypatch.delenv(key, raising=False)
    return path


def test_defaults():
    config = SearchConfig()

    assert config.default_mode == SearchMode.HYBRID
    assert config.default_limit == 20
    assert config.hybrid.k == 60
    assert config.hybrid.lexical_weight == config.hybrid.vector_weight == 0.5
    assert config.reranking.enabled is False
    assert config.reranking.top_k == 30
    assert config.reranking.batch_size == 5
    assert config.query_expansion.method == ExpansionMethod.PRF
    assert config.caching.ttl_seconds == 900


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("KBSEARCH_DEFAULT_MODE", "ADVANCED")
    monkeypatch.setenv("KBSEARCH_HYBRID__K", "30")
    monkeypatch.setenv("KBSEARCH_RERANKING__ENABLED", "true")

    config = SearchConfig()

    assert config.default_mode == SearchMode.ADVANCED
    assert config.hybrid.k == 30
    assert config.reranking.enabled is True


def test_ollama_url_trailing_slash_stripped():
    assert SearchConfig(ollama_url="http://localhost:11434/").ollama_url == "http://localhost:11434"


def test_unknown_mode_rejected():
    with pytest.raises(ValidationError):
        SearchConfig(default_mode="turbo")


def test_negative_weight_rejected():
    with pytest.raises(ValidationError):
        HybridConfig(lexical_weight=-0.1)


def test_cache_bounds_must_be_positive():
    with pytest.raises(ValidationError):
        CachingConfig(max_entries=0)


def test_settings_file_overrides_env(isolated_settings, monkeypatch):
    isolated_settings.write_text(json.dumps({"default_mode": "fast", "hybrid": {"k": 10}, "unrelated": 1}))
    monkeypatch.setenv("KBSEARCH_DEFAULT_MODE", "semantic")

    config = get_config()

    assert config.default_mode == SearchMode.FAST
    assert config.hybrid.k == 10


def test_corrupt_settings_file_ignored(isolated_settings):
    isolated_settings.write_text("{not json")
    assert get_config().default_mode == SearchMode.HYBRID


def test_save_user_settings_round_trip(isolated_settings):
    save_user_settings({"default_limit": 5})

    assert json.loads(isolated_settings.read_text()) == {"default_limit": 5}
    assert get_config().default_limit == 5

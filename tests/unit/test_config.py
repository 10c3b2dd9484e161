from pathlib import Path

import pytest

from ragcore.config import Settings, load_settings
from ragcore.errors import ConfigurationError

REPO_CONFIG = Path(__file__).resolve().parents[2] / "config" / "config.yaml"


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "absent.yaml")

    assert settings == Settings()
    assert settings.chunking.chunk_size_tokens == 1000
    assert settings.cache.ttl_seconds == 1800


def test_yaml_overrides_are_applied(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "chunking:\n  chunk_size_tokens: 300\n  overlap_tokens: 60\n  max_chunk_tokens: 600\n"
        "context:\n  provider: anthropic\n  model: claude-haiku-4-5-20251001\n",
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.chunking.chunk_size_tokens == 300
    assert settings.context.provider == "anthropic"
    assert settings.providers.max_attempts == 3


def test_invalid_chunking_in_yaml_is_a_configuration_error(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("chunking:\n  chunk_size_tokens: 100\n  overlap_tokens: 150\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_settings(path)


def test_non_mapping_yaml_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_settings(path)


def test_shipped_config_matches_defaults() -> None:
    assert load_settings(REPO_CONFIG) == Settings()

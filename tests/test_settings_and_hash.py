"""
Settings loading and source-text hashing.

- settings.yaml values override defaults section by section
- a missing file means defaults
- the hash depends only on the text
"""
import pytest

from flashcard_ai.config import DEFAULT_SETTINGS, load_settings
from flashcard_ai.utils import hash_source_text


def test_missing_settings_file_returns_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "absent.yaml"))
    assert settings == DEFAULT_SETTINGS
    assert settings is not DEFAULT_SETTINGS


def test_settings_file_is_deep_merged(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "openrouter:\n  max_retries: 5\n  parameters:\n    temperature: 0.2\n",
        encoding="utf-8",
    )

    settings = load_settings(str(path))

    assert settings["openrouter"]["max_retries"] == 5
    assert settings["openrouter"]["parameters"]["temperature"] == 0.2
    assert settings["openrouter"]["parameters"]["top_p"] == 1
    assert settings["openrouter"]["model"] == DEFAULT_SETTINGS["openrouter"]["model"]
    assert DEFAULT_SETTINGS["openrouter"]["max_retries"] == 2


def test_settings_file_must_be_a_mapping(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_settings(str(path))


def test_hash_is_stable_and_text_sensitive():
    assert hash_source_text("Krebs cycle") == hash_source_text("Krebs cycle")
    assert hash_source_text("Krebs cycle") != hash_source_text("Calvin cycle")
    assert len(hash_source_text("x")) == 64

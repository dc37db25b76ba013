import pytest

from patient_merge.core.settings import Settings, load_settings, validate_settings


def test_empty_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("MERGE_PAGE_SIZE", "")
    monkeypatch.setenv("MERGE_REFERENCE_CHUNK_SIZE", "")
    settings = Settings()
    assert settings.merge_page_size == 500
    assert settings.reference_chunk_size == 500
    assert settings.placeholder_id_prefix == "LINE_"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("MERGE_PAGE_SIZE", "50")
    monkeypatch.setenv("PLACEHOLDER_ID_PREFIX", "TMP-")
    settings = load_settings()
    assert settings.merge_page_size == 50
    assert settings.placeholder_id_prefix == "TMP-"


def test_invalid_sizes_fail_validation():
    with pytest.raises(RuntimeError, match="MERGE_PAGE_SIZE"):
        validate_settings(Settings(merge_page_size=0))
    with pytest.raises(RuntimeError, match="PLACEHOLDER_ID_PREFIX"):
        validate_settings(Settings(placeholder_id_prefix="  "))


def test_default_password_is_fatal_only_in_production(caplog):
    validate_settings(Settings(app_env="development"))
    assert "default password" in caplog.text
    with pytest.raises(RuntimeError, match="default password"):
        validate_settings(Settings(app_env="production"))


def test_log_level_is_validated():
    validate_settings(Settings(log_level="debug"))
    with pytest.raises(RuntimeError, match="LOG_LEVEL"):
        validate_settings(Settings(log_level="BOGUS"))

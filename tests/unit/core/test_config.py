from listing_sync.core.config import Settings, clear_settings_cache, get_settings


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("CATALOG_SHOP_ID", "42")
    monkeypatch.setenv("HTTP_MAX_RETRIES", "5")

    settings = Settings()

    assert settings.CATALOG_SHOP_ID == 42
    assert settings.HTTP_MAX_RETRIES == 5
    assert settings.CHECKPOINT_MAX_AGE_DAYS == 7


def test_get_settings_is_cached():
    clear_settings_cache()
    assert get_settings() is get_settings()
    clear_settings_cache()

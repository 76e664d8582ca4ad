"""Tests for engine caching in the backend."""

from app.config import get_settings
from app.database import get_engine, reset_engines

from gigsettle.commerce.notifications import (
    LoggingNotificationDispatcher,
    WebhookNotificationDispatcher,
)


class TestEngineCache:
    def test_engine_is_cached_per_path(self):
        assert get_engine() is get_engine()

    def test_logging_dispatcher_by_default(self):
        assert isinstance(get_engine().notifier, LoggingNotificationDispatcher)

    def test_reset_closes_webhook_client(self, monkeypatch):
        monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/settle")
        get_settings.cache_clear()
        engine = get_engine()
        assert isinstance(engine.notifier, WebhookNotificationDispatcher)
        http_client = engine.notifier._client

        reset_engines()

        assert http_client.is_closed
        assert get_engine() is not engine

"""Settlement engine wiring for the backend."""

import threading
from typing import Annotated

from fastapi import Depends

from gigsettle.commerce.engine import SettlementEngine
from gigsettle.commerce.notifications import (
    LoggingNotificationDispatcher,
    WebhookNotificationDispatcher,
)

from .config import Settings, get_settings
from .logging_config import get_logger

logger = get_logger("gigsettle.database")

_engines: dict[str, SettlementEngine] = {}
_lock = threading.Lock()


def get_engine(settings: Settings | None = None) -> SettlementEngine:
    """Get the cached engine for the configured database path."""
    if settings is None:
        settings = get_settings()
    with _lock:
        engine = _engines.get(settings.database_path)
        if engine is None:
            if settings.notification_webhook_url:
                notifier = WebhookNotificationDispatcher(settings.notification_webhook_url)
            else:
                notifier = LoggingNotificationDispatcher()
            engine = SettlementEngine.from_path(
                settings.database_path,
                config=settings.commerce_config(),
                notifier=notifier,
            )
            logger.info(f"Settlement store opened | path={settings.database_path}")
            _engines[settings.database_path] = engine
        return engine


def reset_engines() -> None:
    """Close and drop cached engines (tests, settings reloads)."""
    with _lock:
        engines = list(_engines.values())
        _engines.clear()
    for engine in engines:
        engine.close()


def get_settlement_engine(settings: Annotated[Settings, Depends(get_settings)]) -> SettlementEngine:
    """FastAPI dependency for the settlement engine."""
    return get_engine(settings)


# Type alias for dependency injection
Engine = Annotated[SettlementEngine, Depends(get_settlement_engine)]

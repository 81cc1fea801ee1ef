from __future__ import annotations

from typing import List

import pytest

from learning_calendar.config import get_settings
from learning_calendar.db import models  # noqa: F401  registers tables on Base.metadata
from learning_calendar.db.base import Base
from learning_calendar.db.session import dispose_engine, get_engine
from learning_calendar.telemetry import TelemetryEvent, clear_listeners, register_listener


@pytest.fixture(autouse=True)
def calendar_database(tmp_path, monkeypatch):
    monkeypatch.setenv("LEARNING_CALENDAR_DATABASE_URL", f"sqlite:///{tmp_path / 'calendar.sqlite'}")
    get_settings.cache_clear()
    dispose_engine()
    Base.metadata.create_all(get_engine())
    yield
    clear_listeners()
    dispose_engine()
    get_settings.cache_clear()


@pytest.fixture()
def telemetry_events() -> List[TelemetryEvent]:
    captured: List[TelemetryEvent] = []
    register_listener(captured.append)
    return captured

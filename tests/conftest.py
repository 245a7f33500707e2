from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest

from leadpipe.core.config import Settings
from leadpipe.pipeline import Pipeline
from leadpipe.services.store import InMemoryRepository


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": None,
        "job_retry_base_seconds": 0.0,
        "job_retry_jitter_ratio": 0.0,
        "remove_on_complete": False,
        "queue_poll_interval_seconds": 0.01,
        "otel_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    return _settings


@pytest.fixture
def make_pipeline() -> Callable[..., Pipeline]:
    def factory(*, http_client: httpx.AsyncClient | None = None, **overrides: Any) -> Pipeline:
        return Pipeline.build(_settings(**overrides), repository=InMemoryRepository(), http_client=http_client)

    return factory

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from binsync.config import AppConfig
from binsync.domain.repository import DomainRepository
from binsync.models.store import MemoryStateStore


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 10, 8, 0, tzinfo=UTC))


@pytest.fixture
def config() -> AppConfig:
    return AppConfig()


@pytest.fixture
def repository(config: AppConfig, clock: FakeClock) -> DomainRepository:
    return DomainRepository(MemoryStateStore(), config, clock=clock)

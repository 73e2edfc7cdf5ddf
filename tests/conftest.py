from datetime import datetime, timedelta

import pytest

from safebox.db import init_db, make_engine
from safebox.state import DeviceStateStore
from safebox.store import SqlStore

BASE = datetime(2026, 10, 18, 12, 0, 0)


class FakeClock:
    def __init__(self, start: datetime = BASE):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def engine():
    eng = make_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def store(engine):
    s = SqlStore(engine, timeout=5)
    yield s
    s.close()


@pytest.fixture()
def state() -> DeviceStateStore:
    return DeviceStateStore()

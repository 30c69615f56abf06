"""pytest configuration for kiosk console tests."""

import pytest

from kiosk.broadcast import ChannelClosed


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class RecordingChannel:
    """Outbound channel that keeps every event it was sent."""

    def __init__(self, dead: bool = False) -> None:
        self.events = []
        self.dead = dead
        self.closed = False

    def send(self, event) -> None:
        if self.dead:
            raise ChannelClosed("peer gone")
        self.events.append(event)

    def close(self) -> None:
        self.closed = True

    def of_type(self, name: str) -> list:
        return [e for e in self.events if e.event == name]


@pytest.fixture()
def channel_factory():
    return RecordingChannel


@pytest.fixture()
def settings(tmp_path):
    from kiosk.settings import Settings

    return Settings(
        config_dir=tmp_path / "config",
        static_dir=tmp_path / "public",
        client_script=tmp_path / "start-kiosk.sh",
    )


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()

import asyncio
from datetime import datetime, timezone

import pytest

from credentials import CLIENT, Credentials
from flags import LocalFlags
from models import ShopInfo, ShopSettings, Rider, WorkingHours
from session import LiveSessionController, SessionCallbacks
from store import InMemoryOrderStore

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedRandom:
    """random.Random stand-in returning a fixed fraction"""

    def __init__(self, value=0.0):
        self.value = value

    def random(self):
        return self.value

    def choice(self, seq):
        return seq[0]


class FakeConnection:
    def __init__(self):
        self.audio = []
        self.tool_responses = []
        self.closing = False
        self.close_calls = 0
        self._queue = asyncio.Queue()

    async def send_audio(self, pcm):
        self.audio.append(pcm)

    async def send_tool_response(self, response):
        self.tool_responses.append(response)

    def push(self, *events):
        for event in events:
            self._queue.put_nowait(event)

    def end(self):
        self._queue.put_nowait(None)

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is None:
                return
            if isinstance(event, Exception):
                raise event
            yield event

    async def close(self):
        self.close_calls += 1
        self.closing = True


class FakeCapture:
    def __init__(self, on_frame, on_lost=None):
        self.on_frame = on_frame
        self.on_lost = on_lost
        self.opened = False
        self.started = False
        self.closed = 0

    async def open(self):
        self.opened = True

    def start(self):
        self.started = True

    async def close(self):
        self.closed += 1


class FakePlayback:
    def __init__(self):
        self.chunks = []
        self.interrupts = 0
        self.closed = 0

    async def open(self):
        pass

    def enqueue(self, data):
        self.chunks.append(data)

    def interrupt(self):
        self.interrupts += 1

    async def close(self):
        self.closed += 1


class Recorder(SessionCallbacks):
    def __init__(self):
        self.statuses = []
        self.updates = []
        self.completes = []
        self.orders = []
        self.errors = []
        super().__init__(
            on_status_change=self.statuses.append,
            on_transcription_update=lambda is_user, text: self.updates.append((is_user, text)),
            on_transcription_complete=lambda is_user, text: self.completes.append((is_user, text)),
            on_order_placed=self.orders.append,
            on_error=self.errors.append,
        )


@pytest.fixture
def riders():
    return [Rider("Ali Khan", "0300-1111111"), Rider("Babar Azam", "0300-2222222")]


@pytest.fixture
def settings(riders):
    return ShopSettings(
        shop_info=ShopInfo(name="Cheesy Occean Pizza", admin_key="cheesy123", working_hours=WorkingHours("11:00", "23:00")),
        riders=riders,
        allowed_zones=["Downtown", "DHA"],
    )


@pytest.fixture
def flags(tmp_path):
    return LocalFlags(tmp_path / "flags.json")


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def harness(settings, store, flags):
    """Controller wired to fakes; attributes expose the fakes for assertions"""

    class Harness:
        pass

    h = Harness()
    h.recorder = Recorder()
    h.connection = FakeConnection()
    h.captures = []
    h.playbacks = []
    h.configs = []

    async def resolve():
        return Credentials(mode=CLIENT, api_key="test-key")

    async def connect(credentials, config):
        h.configs.append(config)
        return h.connection

    def capture_factory(on_frame, on_lost=None):
        capture = FakeCapture(on_frame, on_lost)
        h.captures.append(capture)
        return capture

    def playback_factory():
        playback = FakePlayback()
        h.playbacks.append(playback)
        return playback

    h.controller = LiveSessionController(
        settings,
        store,
        flags,
        callbacks=h.recorder,
        resolve=resolve,
        connect=connect,
        capture_factory=capture_factory,
        playback_factory=playback_factory,
        mic_probe=lambda: True,
        clock=lambda: FIXED_NOW,
        local_clock=lambda: datetime(2026, 3, 1, 12, 0),
        rng=FixedRandom(0.5),
        auto_close_delay=0.01,
    )
    return h

"""
Shared fixtures: an in-memory push hub, encrypted profiles and a clock that
only moves when a test says so.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ker_crypto.identity import IdentityManager
from ker_client.config import KerConfig
from ker_client.engine import KeyExchangeEngine
from ker_client.errors import TransportError
from ker_client.events import EventBus
from ker_client.models import DeliveryReport, Envelope
from ker_client.storage import EncryptedStorage
from ker_client.transport import NotificationTransport


class MemoryHub:
    """Routes envelopes between MemoryTransports by session id"""

    def __init__(self):
        self.transports = {}


class MemoryTransport(NotificationTransport):
    """
    Transport that delivers straight into the peer's receive handler.

    online controls whether pushes addressed to this transport arrive;
    failures makes the next N sends raise TransportError.
    """

    def __init__(self, hub: MemoryHub, session_id: str):
        super().__init__()
        self.hub = hub
        self.session_id = session_id
        self.online = True
        self.failures = 0
        self.sent = []
        hub.transports[session_id] = self

    async def send(self, recipient_session_id, encrypted_payload, notification_type):
        if self.failures:
            self.failures -= 1
            raise TransportError("simulated outage")

        envelope = Envelope(recipient_session_id, notification_type, encrypted_payload)
        self.sent.append(envelope)
        target = self.hub.transports.get(recipient_session_id)
        if target is None or not target.online:
            return DeliveryReport(accepted=True, delivered_count=0)
        target.deliver(envelope)
        return DeliveryReport(accepted=True, delivered_count=1)

    def sent_of(self, notification_type):
        return [e for e in self.sent if e.notification_type == notification_type]


class FakeClock:
    """Aware UTC clock advanced by hand"""

    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


async def instant_sleep(delay):
    await asyncio.sleep(0)


async def parked_sleep(delay):
    """Never wakes up; the task has to be cancelled"""
    await asyncio.Event().wait()


@pytest.fixture
def make_storage(tmp_path):
    opened = []

    def factory(profile="profile", password="correct horse"):
        storage = EncryptedStorage(profile, str(tmp_path))
        assert storage.unlock(password)
        opened.append(storage)
        return storage

    yield factory
    for storage in opened:
        storage.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hub():
    return MemoryHub()


@pytest.fixture
def make_engine(make_storage, hub, clock):
    def factory(name, sleep=instant_sleep, **config):
        storage = make_storage(name)
        identity = IdentityManager(storage).load_or_create()
        transport = MemoryTransport(hub, identity.session_id)
        events = EventBus()
        received = []
        events.subscribe(received.append)
        engine = KeyExchangeEngine(
            identity,
            storage,
            transport,
            config=KerConfig(**config),
            events=events,
            display_name=name,
            clock=clock,
            sleep=sleep,
        )
        engine.received_events = received
        return engine

    return factory

"""
Tests for contact/conversation materialization and confirmation retries.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import instant_sleep, parked_sleep
from ker_crypto.identity import IdentityManager
from ker_crypto.payload import generate_request_key
from ker_client.errors import RollbackError, TransportError
from ker_client.events import (
    EventBus,
    ConversationConfirmed,
    ConversationCreated,
    ConversationRollback,
    DeliveryFailed,
)
from ker_client.materializer import ConversationMaterializer
from ker_client.models import (
    Contact,
    DeliveryReport,
    ExchangeRequest,
    RequestState,
    Role,
    conversation_id_for,
    utcnow,
)
from ker_client.storage import StorageError


@pytest.fixture
def accepted_request():
    manager = IdentityManager()
    local = manager.generate_identity()
    peer = manager.generate_identity()
    now = utcnow()
    return ExchangeRequest(
        request_id="req-1",
        initiator_session_id=local.session_id,
        recipient_session_id=peer.session_id,
        initiator_public_key=local.public_key,
        phrase="hello",
        state=RequestState.ACCEPTED,
        created_at=now,
        expires_at=now + timedelta(days=1),
        role=Role.INITIATOR,
        request_key=generate_request_key(),
        responder_public_key=peer.public_key,
        responded_at=now,
        peer_display_name="Bob",
    )


@pytest.fixture
def bus():
    events = EventBus()
    events.received = []
    events.subscribe(events.received.append)
    return events


def reports(*values):
    """Confirmation sender returning the given delivered counts in turn"""
    remaining = list(values)
    calls = []

    async def send():
        calls.append(len(calls) + 1)
        count = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return DeliveryReport(accepted=True, delivered_count=count)

    send.calls = calls
    return send


def of_type(bus, event_type):
    return [e for e in bus.received if isinstance(e, event_type)]


def test_materialize_creates_contact_and_conversation(make_storage, bus, accepted_request):
    storage = make_storage()
    materializer = ConversationMaterializer(storage, bus)

    async def scenario():
        return await materializer.on_exchange_accepted(accepted_request, "ref", reports(1))

    conversation = asyncio.run(scenario())

    peer = accepted_request.recipient_session_id
    assert conversation.conversation_id == conversation_id_for(accepted_request.initiator_session_id, peer)
    assert storage.get_contact(peer).display_name == "Bob"
    stored = storage.get_conversation(conversation.conversation_id)
    assert stored.confirmed
    assert stored.shared_key_ref == "ref"
    assert stored.participant_session_ids == tuple(sorted([accepted_request.initiator_session_id, peer]))
    assert len(of_type(bus, ConversationCreated)) == 1
    assert len(of_type(bus, ConversationConfirmed)) == 1


def test_failed_conversation_rolls_back_new_contact(make_storage, bus, accepted_request, monkeypatch):
    storage = make_storage()
    materializer = ConversationMaterializer(storage, bus)

    def broken(conversation):
        raise StorageError("disk full")

    monkeypatch.setattr(storage, "create_conversation", broken)

    with pytest.raises(RollbackError) as excinfo:
        materializer.materialize(accepted_request, "ref")

    assert excinfo.value.rolled_back is True
    assert storage.get_contact(accepted_request.recipient_session_id) is None
    assert storage.list_conversations() == []
    rollbacks = of_type(bus, ConversationRollback)
    assert [r.request_id for r in rollbacks] == ["req-1"]
    assert rollbacks[0].rolled_back is True
    assert of_type(bus, ConversationCreated) == []


def test_failed_conversation_restores_existing_contact(make_storage, bus, accepted_request, monkeypatch):
    storage = make_storage()
    peer = accepted_request.recipient_session_id
    storage.create_contact(Contact(peer, b"\x01" * 32, "Old name", utcnow()))
    materializer = ConversationMaterializer(storage, bus)

    def broken(conversation):
        raise StorageError("disk full")

    monkeypatch.setattr(storage, "create_conversation", broken)

    with pytest.raises(RollbackError):
        materializer.materialize(accepted_request, "ref")

    contact = storage.get_contact(peer)
    assert contact.display_name == "Old name"
    assert contact.public_key == b"\x01" * 32


def test_failed_rollback_is_reported(make_storage, bus, accepted_request, monkeypatch):
    storage = make_storage()
    materializer = ConversationMaterializer(storage, bus)

    def broken(*args):
        raise StorageError("disk gone")

    monkeypatch.setattr(storage, "create_conversation", broken)
    monkeypatch.setattr(storage, "delete_contact", broken)

    with pytest.raises(RollbackError) as excinfo:
        materializer.materialize(accepted_request, "ref")

    assert excinfo.value.rolled_back is False
    assert of_type(bus, ConversationRollback)[0].rolled_back is False


def test_failed_contact_creation(make_storage, bus, accepted_request, monkeypatch):
    storage = make_storage()
    materializer = ConversationMaterializer(storage, bus)

    def broken(contact):
        raise StorageError("locked")

    monkeypatch.setattr(storage, "create_contact", broken)

    with pytest.raises(RollbackError):
        materializer.materialize(accepted_request, "ref")
    assert storage.list_conversations() == []


def test_rematerialize_rebinds_existing_conversation(make_storage, bus, accepted_request):
    storage = make_storage()
    materializer = ConversationMaterializer(storage, bus)

    first = materializer.materialize(accepted_request, "old-ref")
    accepted_request.request_id = "req-2"
    second = materializer.materialize(accepted_request, "new-ref")

    assert first.conversation_id == second.conversation_id
    stored = storage.get_conversation(first.conversation_id)
    assert stored.shared_key_ref == "new-ref"
    assert stored.request_id == "req-2"
    assert len(storage.list_conversations()) == 1


def test_undelivered_confirmation_is_rescheduled(make_storage, bus, accepted_request):
    storage = make_storage()
    materializer = ConversationMaterializer(storage, bus, base_delay=0.5, sleep=parked_sleep)

    async def scenario():
        conversation = await materializer.on_exchange_accepted(accepted_request, "ref", reports(0))
        pending = materializer.pending_confirmation("req-1")
        await materializer.close()
        return conversation, pending

    conversation, pending = asyncio.run(scenario())

    assert not storage.get_conversation(conversation.conversation_id).confirmed
    assert pending is not None
    assert pending.attempts == 1
    assert pending.next_delay == 0.5
    assert pending.task.cancelled()
    assert materializer.pending_confirmation("req-1") is None


def test_transport_error_is_rescheduled(make_storage, bus, accepted_request):
    storage = make_storage()
    materializer = ConversationMaterializer(storage, bus, sleep=parked_sleep)

    async def failing():
        raise TransportError("relay down")

    async def scenario():
        await materializer.on_exchange_accepted(accepted_request, "ref", failing)
        pending = materializer.pending_confirmation("req-1")
        await materializer.close()
        return pending

    assert asyncio.run(scenario()) is not None


def test_retry_confirms_once_peer_is_reachable(make_storage, bus, accepted_request):
    storage = make_storage()
    materializer = ConversationMaterializer(storage, bus, sleep=instant_sleep)
    sender = reports(0, 0, 1)

    async def scenario():
        conversation = await materializer.on_exchange_accepted(accepted_request, "ref", sender)
        await materializer.pending_confirmation("req-1").task
        return conversation

    conversation = asyncio.run(scenario())

    assert storage.get_conversation(conversation.conversation_id).confirmed
    assert sender.calls == [1, 2, 3]
    assert len(of_type(bus, ConversationConfirmed)) == 1
    assert materializer.pending_confirmation("req-1") is None


def test_gives_up_after_max_attempts(make_storage, bus, accepted_request):
    storage = make_storage()
    materializer = ConversationMaterializer(storage, bus, max_attempts=3, sleep=instant_sleep)
    sender = reports(0)

    async def scenario():
        conversation = await materializer.on_exchange_accepted(accepted_request, "ref", sender)
        await materializer.pending_confirmation("req-1").task
        return conversation

    conversation = asyncio.run(scenario())

    assert sender.calls == [1, 2, 3]
    assert storage.get_conversation(conversation.conversation_id) is not None
    assert not storage.get_conversation(conversation.conversation_id).confirmed
    failures = of_type(bus, DeliveryFailed)
    assert [f.request_id for f in failures] == ["req-1"]
    assert "unreachable" in failures[0].reason


def test_peer_confirmation_stops_retries(make_storage, bus, accepted_request):
    storage = make_storage()
    materializer = ConversationMaterializer(storage, bus, sleep=parked_sleep)

    async def scenario():
        await materializer.on_exchange_accepted(accepted_request, "ref", reports(0))
        task = materializer.pending_confirmation("req-1").task
        confirmed = materializer.mark_confirmed("req-1")
        await asyncio.gather(task, return_exceptions=True)
        return confirmed, task

    confirmed, task = asyncio.run(scenario())

    assert confirmed.confirmed
    assert task.cancelled()
    assert materializer.pending_confirmation("req-1") is None
    assert storage.get_conversation(confirmed.conversation_id).confirmed
    assert len(of_type(bus, ConversationConfirmed)) == 1

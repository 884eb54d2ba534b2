"""
Key Exchange Request engine

Drives the handshake between two identities that have never talked before:

    Created -> Sent -> Accepted | Declined | Revoked | Expired

Each side keeps its own copy of the request and the two copies are only
reconciled through protocol notices (request, accepted, declined, revoked,
conversation_created). Inbound pushes are queued and handled one at a time
by a single dispatcher task; mutations of a given request id are serialized
with a per-id lock.

Every envelope body is sealed twice. The outer layer uses the recipient's
routing key and carries the request id and sender. The inner layer is the
request itself for the first notice, and for every later notice a payload
sealed with the random per-request key the initiator put in the request.
"""

import json
import uuid
import base64
import asyncio
import binascii
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from ker_crypto.identity import Identity, IdentityManager
from ker_crypto.primitives import CryptoError, DecryptionError, KEY_SIZE
from ker_crypto.payload import (
    seal_json,
    open_json,
    derive_routing_key,
    derive_session_key,
    generate_request_key,
)

from .config import KerConfig
from .dedup import DeliveryDeduplicator
from .errors import (
    DuplicateError,
    InvalidRecipient,
    ProtocolError,
    RollbackError,
    TransportError,
)
from .events import (
    EventBus,
    DeliveryFailed,
    RequestAccepted,
    RequestDeclined,
    RequestExpired,
    RequestReceived,
    RequestRevoked,
)
from .locks import KeyedLocks
from .materializer import ConversationMaterializer
from .models import (
    Conversation,
    DeliveryReport,
    Envelope,
    ExchangeRequest,
    ExchangeResponse,
    NotificationType,
    RequestState,
    Role,
    conversation_id_for,
    from_timestamp,
    to_timestamp,
    utcnow,
)
from .retry import RetryCancelled, retry_async
from .session_keys import SessionKeyTable
from .transport import NotificationTransport


logger = logging.getLogger(__name__)


class KeyExchangeEngine:
    """
    Handshake state machine for one local identity.

    Args:
        identity: Local identity; passed in explicitly, never looked up globally
        storage: Encrypted storage for requests, keys, contacts, conversations
        transport: Notification transport
        config: Tunables (defaults if None)
        events: Event bus shared with UI/storage collaborators
        display_name: Name shared with peers once an exchange is accepted
        clock: Returns the current aware UTC datetime
        sleep: Awaitable sleep used for backoff
    """

    def __init__(
        self,
        identity: Identity,
        storage,
        transport: NotificationTransport,
        config: Optional[KerConfig] = None,
        events: Optional[EventBus] = None,
        display_name: Optional[str] = None,
        deduplicator: Optional[DeliveryDeduplicator] = None,
        materializer: Optional[ConversationMaterializer] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.identity = identity
        self.storage = storage
        self.transport = transport
        self.config = config or KerConfig()
        self.events = events or EventBus()
        self.display_name = display_name
        self.clock = clock
        self.sleep = sleep

        self.dedup = deduplicator or DeliveryDeduplicator(
            ttl_seconds=self.config.dedup_ttl_seconds,
            sweep_interval=self.config.dedup_sweep_interval,
        )
        self.materializer = materializer or ConversationMaterializer(
            storage,
            self.events,
            max_attempts=self.config.confirmation_max_attempts,
            base_delay=self.config.retry_base_delay,
            factor=self.config.retry_factor,
            sleep=sleep,
        )
        self.session_keys = SessionKeyTable(storage)
        self._routing_key = derive_routing_key(identity.session_id)
        self._locks = KeyedLocks()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []

        transport.set_receive_handler(self.on_notification)

    # Lifecycle

    async def start(self, expiry_sweeper: bool = True):
        """Start the inbound dispatcher (and the expiry sweeper)"""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.config.dispatcher_queue_size)
        self._tasks.append(asyncio.create_task(self._dispatch_loop()))
        if expiry_sweeper:
            self._tasks.append(asyncio.create_task(self.run_expiry_sweeper()))

    async def close(self):
        """Stop background work: dispatcher, sweeper, confirmation retries"""
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.materializer.close()

    async def drain(self):
        """Wait until every queued notification has been handled"""
        if self._queue is not None:
            await self._queue.join()

    # Commands

    async def send_request(
        self,
        recipient_session_id: str,
        phrase: str,
        request_id: Optional[str] = None,
    ) -> str:
        """
        Invite recipient_session_id to a key exchange.

        Args:
            recipient_session_id: Session id of the peer
            phrase: Human-readable context shown to the recipient
            request_id: Caller-chosen id for an idempotent send (new id if None)

        Returns:
            The request id

        Raises:
            InvalidRecipient: Malformed session id, or our own
            TransportError: Transport failed after all retries; the request is
                kept in Created and resent by resume()
        """
        if not IdentityManager.validate_session_id(recipient_session_id):
            raise InvalidRecipient(f"Malformed session id: {recipient_session_id!r}")
        if recipient_session_id == self.identity.session_id:
            raise InvalidRecipient("Cannot send a key exchange request to ourselves")

        request_id = request_id or uuid.uuid4().hex
        async with self._locks.hold(request_id):
            request = self.storage.load_request(request_id)
            if request is None:
                now = self.clock()
                request = ExchangeRequest(
                    request_id=request_id,
                    initiator_session_id=self.identity.session_id,
                    recipient_session_id=recipient_session_id,
                    initiator_public_key=self.identity.public_key,
                    phrase=phrase,
                    state=RequestState.CREATED,
                    created_at=now,
                    expires_at=now + timedelta(seconds=self.config.request_ttl_seconds),
                    role=Role.INITIATOR,
                    request_key=generate_request_key(),
                )
                self.storage.save_request(request)
                logger.info("Created request %s for %s", request_id, recipient_session_id)
            elif request.role != Role.INITIATOR or request.recipient_session_id != recipient_session_id:
                raise ProtocolError(f"Request id {request_id} is already in use")
            elif request.state != RequestState.CREATED:
                logger.info("Request %s already %s; not sending again", request_id, request.state.value)
                return request_id

        await self._transmit_request(request)
        return request_id

    async def reinvite(self, request_id: str) -> str:
        """
        Send a fresh request to the peer of a finished request.

        The old record is left as it is; the new request gets a new id.

        Raises:
            ProtocolError: If the old request is not ours or still pending
        """
        request = self._load(request_id)
        if request.role != Role.INITIATOR:
            raise ProtocolError("Only the initiator can reinvite")
        if not request.state.is_terminal:
            raise ProtocolError(f"Request {request_id} is still {request.state.value}")
        return await self.send_request(request.recipient_session_id, request.phrase)

    async def accept(self, request_id: str, responder_public_key: Optional[bytes] = None) -> Conversation:
        """
        Accept a received request.

        Computes the session key and materializes the contact and
        conversation before the request is marked Accepted, then sends the
        acceptance notice to the initiator. If materialization fails the
        request stays pending and the previous session key is put back, so
        accept can be called again.

        Args:
            request_id: Request to accept
            responder_public_key: Our public key; defaults to the engine identity's

        Returns:
            The materialized conversation

        Raises:
            ProtocolError: Unknown request, wrong side, or not pending
            RollbackError: Materialization failed
        """
        if responder_public_key is not None and responder_public_key != self.identity.public_key:
            raise ProtocolError("Responder key does not belong to this identity")

        async with self._locks.hold(request_id):
            request = self._load(request_id)
            if request.role != Role.RECIPIENT:
                raise ProtocolError("Only the recipient can accept a request")
            if request.state != RequestState.SENT:
                raise ProtocolError(f"Cannot accept request {request_id}: it is {request.state.value}")
            now = self.clock()
            if request.is_overdue(now):
                self._expire_locked(request)
                raise ProtocolError(f"Cannot accept request {request_id}: it expired")

            try:
                session_key = derive_session_key(
                    self.identity.private_key,
                    request.initiator_public_key,
                    self.identity.session_id,
                    request.initiator_session_id,
                    request.request_id,
                )
            except CryptoError as e:
                raise ProtocolError(f"Key agreement failed for {request_id}: {e}") from e

            request.responder_public_key = self.identity.public_key
            request.responded_at = now
            conversation = self._materialize_locked(request, session_key)
            self._transition(request, RequestState.ACCEPTED)
            self.events.emit(RequestAccepted(request))

        await self.materializer.confirm(conversation, self._confirmation_sender(request, session_key))
        return conversation

    async def decline(self, request_id: str) -> bool:
        """
        Decline a received request and tell the initiator.

        The record stays in storage as Declined.

        Returns:
            True if declined, False if the request was already finished

        Raises:
            ProtocolError: Unknown request or we are the initiator
        """
        async with self._locks.hold(request_id):
            request = self._load(request_id)
            if request.role != Role.RECIPIENT:
                raise ProtocolError("Only the recipient can decline a request")
            if request.state.is_terminal:
                logger.info("Ignoring decline of %s: already %s", request_id, request.state.value)
                return False
            request.responded_at = self.clock()
            self._transition(request, RequestState.DECLINED)
            self.events.emit(RequestDeclined(request))
            envelope = self._follow_up_envelope(request, NotificationType.DECLINED, {
                'declined_at': to_timestamp(request.responded_at),
            })

        await self._notify_best_effort(request, envelope, NotificationType.DECLINED)
        return True

    async def revoke(self, request_id: str) -> bool:
        """
        Withdraw a request we sent. A second revoke is a no-op.

        Returns:
            True if revoked now, False if it was already finished

        Raises:
            ProtocolError: Unknown request or we are the recipient
        """
        async with self._locks.hold(request_id):
            request = self._load(request_id)
            if request.role != Role.INITIATOR:
                raise ProtocolError("Only the initiator can revoke a request")
            if request.state.is_terminal:
                logger.info("Ignoring revoke of %s: already %s", request_id, request.state.value)
                return False
            self._transition(request, RequestState.REVOKED)
            self.events.emit(RequestRevoked(request))
            envelope = self._follow_up_envelope(request, NotificationType.REVOKED, {
                'revoked_at': to_timestamp(self.clock()),
            })

        await self._notify_best_effort(request, envelope, NotificationType.REVOKED)
        return True

    async def expire(self, request_id: str) -> bool:
        """
        Expire a request whose expires_at has passed. No notice is sent.

        Returns:
            True if the request moved to Expired
        """
        async with self._locks.hold(request_id):
            request = self.storage.load_request(request_id)
            if request is None or not request.is_overdue(self.clock()):
                return False
            self._expire_locked(request)
            return True

    async def expire_overdue(self) -> int:
        """
        Sweep all pending requests past their expiry.

        Returns:
            Number of requests expired
        """
        now = self.clock()
        pending = self.storage.list_requests(states=[RequestState.CREATED, RequestState.SENT])
        expired = 0
        for request in pending:
            if request.is_overdue(now) and await self.expire(request.request_id):
                expired += 1
        return expired

    async def run_expiry_sweeper(self):
        """Expire overdue requests forever, on a fixed interval"""
        while True:
            try:
                await self.expire_overdue()
            except Exception:
                logger.exception("Expiry sweep failed")
            await asyncio.sleep(self.config.expiry_sweep_interval_seconds)

    async def resume(self):
        """
        Pick up persisted work after (re)connecting to the transport.

        Expires overdue requests, resends requests the transport never took,
        and reschedules confirmations for unconfirmed conversations.
        """
        await self.expire_overdue()

        for request in self.storage.list_requests(states=[RequestState.CREATED], role=Role.INITIATOR):
            try:
                await self._transmit_request(request)
            except TransportError as e:
                logger.warning("Request %s still not sent: %s", request.request_id, e)

        for conversation in self.storage.list_conversations(unconfirmed_only=True):
            request = self.storage.load_request(conversation.request_id)
            if request is None or request.state != RequestState.ACCEPTED:
                continue
            session_key = self.session_keys.get_by_ref(conversation.shared_key_ref)
            if session_key is None:
                logger.warning("No session key for %s; cannot resend confirmation", conversation.conversation_id)
                continue
            self.materializer.schedule_retry(conversation, self._confirmation_sender(request, session_key))

    def get_request(self, request_id: str) -> Optional[ExchangeRequest]:
        return self.storage.load_request(request_id)

    def list_requests(self, states=None, role: Optional[Role] = None) -> List[ExchangeRequest]:
        return self.storage.list_requests(states=states, role=role)

    # Inbound

    def on_notification(self, envelope: Envelope):
        """
        Transport receive callback. Safe to call from any thread; it only
        queues the envelope for the dispatcher.
        """
        if self._loop is None or self._queue is None:
            logger.warning("Engine not started; dropping %s notification", envelope.notification_type)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._enqueue(envelope)
        else:
            self._loop.call_soon_threadsafe(self._enqueue, envelope)

    def _enqueue(self, envelope: Envelope):
        try:
            self._queue.put_nowait(envelope)
        except asyncio.QueueFull:
            logger.warning("Inbound queue full; dropping %s notification", envelope.notification_type)

    async def _dispatch_loop(self):
        while True:
            envelope = await self._queue.get()
            try:
                await self.handle_envelope(envelope)
            finally:
                self._queue.task_done()

    async def handle_envelope(self, envelope: Envelope) -> bool:
        """
        Process one inbound envelope, dropping it on any per-message error.

        Returns:
            True if processed, False if dropped
        """
        try:
            await self.process_envelope(envelope)
            return True
        except DuplicateError as e:
            logger.debug("Duplicate dropped: %s", e)
        except CryptoError as e:
            logger.warning("Dropping %s notification: %s", envelope.notification_type, e)
        except ProtocolError as e:
            logger.warning("Ignoring %s notification: %s", envelope.notification_type, e)
        except RollbackError as e:
            logger.error("Materialization failed: %s", e)
        except Exception:
            logger.exception("Unexpected error handling %s notification", envelope.notification_type)
        return False

    async def process_envelope(self, envelope: Envelope):
        """
        Open and route one inbound envelope.

        Raises:
            DecryptionError / IntegrityError: Payload cannot be trusted
            DuplicateError: Already processed within the dedup window
            ProtocolError: Not valid for the local state
        """
        if envelope.recipient_session_id != self.identity.session_id:
            raise ProtocolError("Notification not addressed to us")

        outer = self._open_envelope(envelope)
        request_id = outer.get('request_id')
        sender = outer.get('sender_session_id')
        if not isinstance(request_id, str) or not request_id:
            raise ProtocolError("Missing request id")
        if not IdentityManager.validate_session_id(sender):
            raise ProtocolError(f"Malformed sender session id: {sender!r}")
        if outer.get('type') != envelope.notification_type:
            raise ProtocolError("Notification type does not match sealed payload")

        if not self.dedup.should_process(f"{envelope.notification_type}:{request_id}"):
            raise DuplicateError(f"{envelope.notification_type} for {request_id}")

        handlers = {
            NotificationType.REQUEST.value: self.on_request_received,
            NotificationType.ACCEPTED.value: self.on_accept_received,
            NotificationType.DECLINED.value: self.on_decline_received,
            NotificationType.REVOKED.value: self.on_revoke_received,
            NotificationType.CONVERSATION_CREATED.value: self.on_conversation_created,
        }
        handler = handlers.get(envelope.notification_type)
        if handler is None:
            raise ProtocolError(f"Unknown notification type {envelope.notification_type!r}")
        try:
            await handler(outer)
        except RollbackError:
            # Nothing was committed; a redelivery may try again
            self.dedup.release_process(f"{envelope.notification_type}:{request_id}")
            raise

    async def on_request_received(self, payload: Dict) -> ExchangeRequest:
        """
        Record an incoming request and surface it; never auto-accepts.

        Raises:
            ProtocolError: Malformed request, forged sender or reused request id
        """
        request_id = payload['request_id']
        initiator_session_id = payload['sender_session_id']
        body = payload.get('body')
        try:
            initiator_public_key = bytes.fromhex(body['initiator_public_key'])
            request_key = base64.b64decode(body['request_key'], validate=True)
            recipient_session_id = body['recipient_session_id']
            phrase = str(body['phrase'])
            created_at = from_timestamp(body['created_at'])
            expires_at = from_timestamp(body['expires_at'])
            display_name = body.get('display_name')
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise ProtocolError(f"Malformed request {request_id}: {e}") from e

        if recipient_session_id != self.identity.session_id:
            raise ProtocolError(f"Request {request_id} was meant for someone else")
        if not IdentityManager.matches_public_key(initiator_session_id, initiator_public_key):
            raise ProtocolError(f"Request {request_id}: sender session id does not match its key")
        if len(request_key) != KEY_SIZE or created_at is None or expires_at is None:
            raise ProtocolError(f"Malformed request {request_id}")

        async with self._locks.hold(request_id):
            if self.storage.load_request(request_id) is not None:
                raise ProtocolError(f"Request id {request_id} already known")

            request = ExchangeRequest(
                request_id=request_id,
                initiator_session_id=initiator_session_id,
                recipient_session_id=self.identity.session_id,
                initiator_public_key=initiator_public_key,
                phrase=phrase,
                state=RequestState.SENT,
                created_at=created_at,
                expires_at=expires_at,
                role=Role.RECIPIENT,
                request_key=request_key,
                peer_display_name=display_name if isinstance(display_name, str) else None,
            )
            self.storage.save_request(request)
            if request.is_overdue(self.clock()):
                logger.info("Request %s arrived after it expired", request_id)
                self._expire_locked(request)
                return request

            logger.info("Received request %s from %s", request_id, initiator_session_id)
            self.events.emit(RequestReceived(request))
            return request

    async def on_accept_received(self, payload: Dict) -> Conversation:
        """
        Complete the handshake on the initiator side.

        Raises:
            ProtocolError: Unknown or stale request (revoked, expired, ...)
            IntegrityError / DecryptionError: Acceptance cannot be trusted
        """
        request_id = payload['request_id']
        async with self._locks.hold(request_id):
            request = self._load_for_peer(request_id, payload['sender_session_id'], Role.INITIATOR)
            if not request.can_transition(RequestState.ACCEPTED):
                raise ProtocolError(f"Stale acceptance for request {request_id}: it is {request.state.value}")

            response = self._parse_response(request, open_json(payload.get('body'), request.request_key))
            if request.is_overdue(self.clock()):
                self._expire_locked(request)
                raise ProtocolError(f"Acceptance for request {request_id} arrived after it expired")

            try:
                session_key = derive_session_key(
                    self.identity.private_key,
                    response.responder_public_key,
                    self.identity.session_id,
                    request.recipient_session_id,
                    request.request_id,
                )
            except CryptoError as e:
                raise ProtocolError(f"Key agreement failed for {request_id}: {e}") from e
            # Only a responder holding the matching private key can seal this
            user_data = open_json(response.encrypted_user_data, session_key)

            if request.state == RequestState.CREATED:
                logger.info("Acceptance for %s arrived before its send was confirmed", request_id)
            request.responder_public_key = response.responder_public_key
            request.responded_at = response.responded_at
            display_name = user_data.get('display_name')
            request.peer_display_name = display_name if isinstance(display_name, str) else None
            conversation = self._materialize_locked(request, session_key)
            self._transition(request, RequestState.ACCEPTED)
            logger.info("Request %s accepted by %s", request_id, request.recipient_session_id)
            self.events.emit(RequestAccepted(request))

        await self.materializer.confirm(conversation, self._confirmation_sender(request, session_key))
        return conversation

    async def on_decline_received(self, payload: Dict):
        """Initiator side: the recipient declined"""
        request_id = payload['request_id']
        async with self._locks.hold(request_id):
            request = self._load_for_peer(request_id, payload['sender_session_id'], Role.INITIATOR)
            body = open_json(payload.get('body'), request.request_key)
            if request.state.is_terminal:
                raise ProtocolError(f"Stale decline for request {request_id}: it is {request.state.value}")
            request.responded_at = from_timestamp(body.get('declined_at')) or self.clock()
            self._transition(request, RequestState.DECLINED)
            logger.info("Request %s declined by %s", request_id, request.recipient_session_id)
            self.events.emit(RequestDeclined(request))

    async def on_revoke_received(self, payload: Dict):
        """
        Recipient side: the initiator withdrew the request.

        A revoke that loses the race against our own accept leaves the request
        Accepted, but stops any confirmation retries for it.
        """
        request_id = payload['request_id']
        async with self._locks.hold(request_id):
            request = self._load_for_peer(request_id, payload['sender_session_id'], Role.RECIPIENT)
            open_json(payload.get('body'), request.request_key)
            if request.state == RequestState.ACCEPTED:
                self.materializer.cancel_confirmation(request_id)
                logger.info("Revoke for %s arrived after we accepted; stopped confirmations", request_id)
                return
            if request.state.is_terminal:
                logger.info("Ignoring revoke of %s: already %s", request_id, request.state.value)
                return
            self._transition(request, RequestState.REVOKED)
            logger.info("Request %s revoked by %s", request_id, request.initiator_session_id)
            self.events.emit(RequestRevoked(request))

    async def on_conversation_created(self, payload: Dict):
        """Recipient side: the initiator materialized its conversation"""
        request_id = payload['request_id']
        async with self._locks.hold(request_id):
            request = self._load_for_peer(request_id, payload['sender_session_id'], Role.RECIPIENT)
            body = open_json(payload.get('body'), request.request_key)
            if request.state != RequestState.ACCEPTED:
                raise ProtocolError(f"Conversation confirmation for {request_id} but it is {request.state.value}")

            session_key = self.session_keys.get(self.identity.session_id, request.initiator_session_id)
            if session_key is None:
                raise ProtocolError(f"No session key for request {request_id}")
            user_data = open_json(body.get('encrypted_user_data'), session_key)

            display_name = user_data.get('display_name')
            if isinstance(display_name, str):
                request.peer_display_name = display_name
                self.storage.save_request(request)
                contact = self.storage.get_contact(request.initiator_session_id)
                if contact is not None:
                    self.storage.update_contact(contact.session_id, contact.public_key, display_name)

        self.materializer.mark_confirmed(request_id)

    # Outbound helpers

    async def _transmit_request(self, request: ExchangeRequest):
        """Send a Created request and mark it Sent once the transport took it"""
        envelope = self._seal(request.recipient_session_id, NotificationType.REQUEST, request.request_id, {
            'initiator_public_key': request.initiator_public_key.hex(),
            'recipient_session_id': request.recipient_session_id,
            'phrase': request.phrase,
            'request_key': base64.b64encode(request.request_key).decode("ascii"),
            'display_name': self.display_name,
            'created_at': to_timestamp(request.created_at),
            'expires_at': to_timestamp(request.expires_at),
        })

        def still_created() -> bool:
            current = self.storage.load_request(request.request_id)
            return current is not None and current.state == RequestState.CREATED

        try:
            report = await self._deliver(envelope, f"{NotificationType.REQUEST.value}:{request.request_id}", still_created)
        except DuplicateError:
            logger.debug("Request %s already went out in this window", request.request_id)
            return
        except RetryCancelled:
            logger.info("Stopped sending request %s: it is no longer pending", request.request_id)
            return

        if report.delivered_count == 0:
            logger.info("Request %s accepted by transport but not delivered yet", request.request_id)

        async with self._locks.hold(request.request_id):
            current = self.storage.load_request(request.request_id)
            if current is not None and current.state == RequestState.CREATED:
                self._transition(current, RequestState.SENT)
                request.state = RequestState.SENT

    def _confirmation_sender(self, request: ExchangeRequest, session_key: bytes):
        """Build the coroutine function that sends our confirmation notice"""
        user_data = {'display_name': self.display_name}
        if request.role == Role.RECIPIENT:
            notification_type = NotificationType.ACCEPTED
            body = {
                'responder_session_id': self.identity.session_id,
                'responder_public_key': self.identity.public_key.hex(),
                'responded_at': to_timestamp(request.responded_at),
            }
        else:
            notification_type = NotificationType.CONVERSATION_CREATED
            body = {
                'conversation_id': conversation_id_for(request.initiator_session_id, request.recipient_session_id),
            }
        idempotency_key = f"{notification_type.value}:{request.request_id}"

        async def send() -> DeliveryReport:
            body['encrypted_user_data'] = seal_json(user_data, session_key)
            envelope = self._follow_up_envelope(request, notification_type, body)
            try:
                report = await self._send_once(envelope, idempotency_key)
            except DuplicateError as e:
                raise TransportError(f"Confirmation already in flight: {e}") from e
            if not report.delivered:
                self.dedup.release_send(idempotency_key)
            return report

        return send

    def _follow_up_envelope(self, request: ExchangeRequest, notification_type: NotificationType, body: Dict) -> Envelope:
        return self._seal(
            request.peer_session_id,
            notification_type,
            request.request_id,
            seal_json(body, request.request_key),
        )

    def _seal(self, recipient_session_id: str, notification_type: NotificationType, request_id: str, body) -> Envelope:
        outer = {
            'type': notification_type.value,
            'request_id': request_id,
            'sender_session_id': self.identity.session_id,
            'sent_at': to_timestamp(self.clock()),
            'body': body,
        }
        sealed = seal_json(outer, derive_routing_key(recipient_session_id))
        encoded = base64.urlsafe_b64encode(json.dumps(sealed).encode("utf-8")).decode("ascii")
        return Envelope(
            recipient_session_id=recipient_session_id,
            notification_type=notification_type.value,
            encrypted_body=encoded,
        )

    def _open_envelope(self, envelope: Envelope) -> Dict:
        try:
            sealed = json.loads(base64.urlsafe_b64decode(envelope.encrypted_body.encode("ascii")))
        except (ValueError, binascii.Error) as e:
            raise DecryptionError(f"Undecodable envelope body: {e}") from e
        return open_json(sealed, self._routing_key)

    async def _send_once(self, envelope: Envelope, idempotency_key: str) -> DeliveryReport:
        """One physical send, gated by the deduplicator"""
        if not self.dedup.should_send(idempotency_key):
            raise DuplicateError(idempotency_key)
        try:
            report = await asyncio.wait_for(
                self.transport.send(
                    envelope.recipient_session_id,
                    envelope.encrypted_body,
                    envelope.notification_type,
                ),
                timeout=self.config.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.dedup.release_send(idempotency_key)
            raise TransportError(f"Send timed out after {self.config.send_timeout_seconds}s")
        except BaseException:
            self.dedup.release_send(idempotency_key)
            raise

        if not report.accepted:
            self.dedup.release_send(idempotency_key)
            raise TransportError("Transport did not accept the notification")
        return report

    async def _deliver(self, envelope: Envelope, idempotency_key: str, should_continue=None) -> DeliveryReport:
        return await retry_async(
            lambda attempt: self._send_once(envelope, idempotency_key),
            attempts=self.config.retry_max_attempts,
            base_delay=self.config.retry_base_delay,
            factor=self.config.retry_factor,
            should_continue=should_continue,
            sleep=self.sleep,
        )

    async def _notify_best_effort(self, request: ExchangeRequest, envelope: Envelope, notification_type: NotificationType):
        idempotency_key = f"{notification_type.value}:{request.request_id}"
        try:
            report = await self._deliver(envelope, idempotency_key)
        except DuplicateError:
            return
        except TransportError as e:
            logger.warning("Could not deliver %s for %s: %s", notification_type.value, request.request_id, e)
            self.events.emit(DeliveryFailed(
                request_id=request.request_id,
                reason=f"Contact unreachable, try again later ({e})",
            ))
            return
        if report.delivered_count == 0:
            logger.info("%s for %s not delivered; peer offline", notification_type.value, request.request_id)

    # State helpers

    def _load(self, request_id: str) -> ExchangeRequest:
        request = self.storage.load_request(request_id)
        if request is None:
            raise ProtocolError(f"Unknown request {request_id}")
        return request

    def _load_for_peer(self, request_id: str, sender_session_id: str, role: Role) -> ExchangeRequest:
        request = self._load(request_id)
        if request.role != role:
            raise ProtocolError(f"Request {request_id} is not ours as {role.value}")
        if request.peer_session_id != sender_session_id:
            raise ProtocolError(f"Request {request_id} does not involve {sender_session_id}")
        return request

    def _parse_response(self, request: ExchangeRequest, body: Dict) -> ExchangeResponse:
        try:
            responder_public_key = bytes.fromhex(body['responder_public_key'])
            responder_session_id = body['responder_session_id']
            encrypted_user_data = body['encrypted_user_data']
            responded_at = from_timestamp(body.get('responded_at')) or self.clock()
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed acceptance for {request.request_id}: {e}") from e

        if responder_session_id != request.recipient_session_id:
            raise ProtocolError(f"Acceptance for {request.request_id} from the wrong session")
        if not IdentityManager.matches_public_key(responder_session_id, responder_public_key):
            raise ProtocolError(f"Acceptance for {request.request_id}: key does not match session id")
        return ExchangeResponse(
            request_id=request.request_id,
            responder_public_key=responder_public_key,
            encrypted_user_data=encrypted_user_data,
            responded_at=responded_at,
        )

    def _transition(self, request: ExchangeRequest, target: RequestState):
        if not request.can_transition(target):
            raise ProtocolError(
                f"Illegal transition {request.state.value} -> {target.value} for {request.request_id}"
            )
        logger.debug("Request %s: %s -> %s", request.request_id, request.state.value, target.value)
        request.state = target
        self.storage.save_request(request)

    def _materialize_locked(self, request: ExchangeRequest, session_key: bytes) -> Conversation:
        """
        Store the session key and materialize the conversation.

        On RollbackError the pair's previous key (if any) is put back, so a
        failed attempt leaves no trace.
        """
        local_session_id = self.identity.session_id
        peer_session_id = request.peer_session_id
        previous_key = self.session_keys.get(local_session_id, peer_session_id)
        key_ref = self.session_keys.store(local_session_id, peer_session_id, session_key)
        try:
            return self.materializer.materialize(request, key_ref)
        except RollbackError:
            self.session_keys.restore(local_session_id, peer_session_id, previous_key)
            raise

    def _expire_locked(self, request: ExchangeRequest):
        self._transition(request, RequestState.EXPIRED)
        logger.info("Request %s expired", request.request_id)
        self.events.emit(RequestExpired(request))

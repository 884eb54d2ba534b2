"""
Conversation materialization

Once an exchange is accepted, the contact and the conversation are created
as one unit: if the conversation cannot be created, the contact change is
undone. After materializing, a confirmation notice goes to the peer; if it
is not delivered the conversation stays, flagged unconfirmed, and the notice
is retried with backoff in the background.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional
from dataclasses import dataclass, field

from .errors import RollbackError, TransportError
from .events import (
    EventBus,
    ConversationCreated,
    ConversationConfirmed,
    ConversationRollback,
    DeliveryFailed,
)
from .models import (
    Contact,
    Conversation,
    DeliveryReport,
    ExchangeRequest,
    conversation_id_for,
    utcnow,
)
from .retry import backoff_delays


logger = logging.getLogger(__name__)

ConfirmationSender = Callable[[], Awaitable[DeliveryReport]]


@dataclass
class PendingConfirmation:
    """
    A confirmation notice still waiting to be delivered.

    Attributes:
        request_id: Exchange the conversation came from
        conversation_id: Conversation waiting for confirmation
        attempts: Sends tried so far
        next_delay: Backoff before the next attempt, in seconds
        task: Background retry task
    """
    request_id: str
    conversation_id: str
    attempts: int
    next_delay: float
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class ConversationMaterializer:
    """
    Creates contacts and conversations for accepted exchanges.

    Args:
        storage: Encrypted storage holding contacts and conversations
        events: Event bus for ConversationCreated / ConversationRollback / ...
        max_attempts: Confirmation sends per conversation, first one included
        base_delay: Backoff before the first confirmation retry
        factor: Backoff multiplier
        sleep: Awaitable sleep, replaceable in tests
    """

    def __init__(
        self,
        storage,
        events: EventBus,
        max_attempts: int = 5,
        base_delay: float = 0.5,
        factor: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.storage = storage
        self.events = events
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.factor = factor
        self.sleep = sleep
        self._pending: Dict[str, PendingConfirmation] = {}

    async def on_exchange_accepted(
        self,
        request: ExchangeRequest,
        shared_key_ref: str,
        send_confirmation: ConfirmationSender,
    ) -> Conversation:
        """
        Materialize the contact and conversation for an accepted request.

        Args:
            request: The accepted request (either role)
            shared_key_ref: Reference to the stored session key
            send_confirmation: Sends the confirmation notice to the peer

        Returns:
            The created conversation

        Raises:
            RollbackError: If materialization failed; rolled_back tells whether
                the contact change was undone
        """
        conversation = self.materialize(request, shared_key_ref)
        await self.confirm(conversation, send_confirmation)
        return conversation

    def materialize(self, request: ExchangeRequest, shared_key_ref: str) -> Conversation:
        """Contact then conversation, all or nothing"""
        peer_session_id = request.peer_session_id
        peer_public_key = request.peer_public_key
        previous_contact = self.storage.get_contact(peer_session_id)

        try:
            if previous_contact is None:
                self.storage.create_contact(Contact(
                    session_id=peer_session_id,
                    public_key=peer_public_key,
                    display_name=request.peer_display_name,
                    created_at=utcnow(),
                ))
            else:
                self.storage.update_contact(
                    peer_session_id,
                    peer_public_key,
                    request.peer_display_name or previous_contact.display_name,
                )
        except Exception as e:
            logger.error("Contact creation failed for request %s: %s", request.request_id, e)
            self._rolled_back(request.request_id, f"contact creation failed: {e}", True)
            raise RollbackError(f"Contact creation failed: {e}", rolled_back=True) from e

        participants = tuple(sorted([request.local_session_id, peer_session_id]))
        conversation = Conversation(
            conversation_id=conversation_id_for(*participants),
            participant_session_ids=participants,
            shared_key_ref=shared_key_ref,
            created_at=utcnow(),
            request_id=request.request_id,
            confirmed=False,
        )

        try:
            existing = self.storage.get_conversation(conversation.conversation_id)
            if existing is None:
                self.storage.create_conversation(conversation)
            else:
                # Reinvite after an earlier exchange: keep the conversation, move it to the new key
                self.storage.rebind_conversation(existing.conversation_id, shared_key_ref, request.request_id)
                conversation.created_at = existing.created_at
        except Exception as e:
            logger.error("Conversation creation failed for request %s: %s", request.request_id, e)
            rolled_back = self._undo_contact(peer_session_id, previous_contact)
            self._rolled_back(request.request_id, f"conversation creation failed: {e}", rolled_back)
            raise RollbackError(f"Conversation creation failed: {e}", rolled_back=rolled_back) from e

        logger.info("Materialized %s for request %s", conversation.conversation_id, request.request_id)
        self.events.emit(ConversationCreated(conversation))
        return conversation

    def _undo_contact(self, peer_session_id: str, previous_contact: Optional[Contact]) -> bool:
        try:
            if previous_contact is None:
                self.storage.delete_contact(peer_session_id)
            else:
                self.storage.update_contact(
                    previous_contact.session_id,
                    previous_contact.public_key,
                    previous_contact.display_name,
                )
            return True
        except Exception:
            logger.exception("Contact rollback failed for %s; local state is inconsistent", peer_session_id)
            return False

    def _rolled_back(self, request_id: str, reason: str, rolled_back: bool):
        self.events.emit(ConversationRollback(request_id=request_id, reason=reason, rolled_back=rolled_back))

    async def confirm(self, conversation: Conversation, send_confirmation: ConfirmationSender):
        """
        Send the confirmation notice once, scheduling retries if it is not delivered.
        """
        if await self._try_send(conversation, send_confirmation):
            return
        self._schedule(conversation, send_confirmation, attempts=1)

    def schedule_retry(self, conversation: Conversation, send_confirmation: ConfirmationSender):
        """Schedule confirmation retries for an unconfirmed conversation (after restart)"""
        if conversation.confirmed or conversation.request_id in self._pending:
            return
        self._schedule(conversation, send_confirmation, attempts=0)

    def pending_confirmation(self, request_id: str) -> Optional[PendingConfirmation]:
        return self._pending.get(request_id)

    def mark_confirmed(self, request_id: str) -> Optional[Conversation]:
        """
        Peer confirmed the conversation: flag it and stop retrying.

        Returns:
            The confirmed conversation, or None if there is none for request_id
        """
        self.cancel_confirmation(request_id)
        conversation = self.storage.find_conversation_by_request(request_id)
        if conversation is None:
            return None
        if not conversation.confirmed:
            self.storage.set_conversation_confirmed(conversation.conversation_id, True)
            conversation.confirmed = True
            self.events.emit(ConversationConfirmed(conversation))
        return conversation

    def cancel_confirmation(self, request_id: str):
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.task is not None and not pending.task.done():
            pending.task.cancel()
            logger.debug("Cancelled confirmation retries for %s", request_id)

    async def close(self):
        """Cancel all confirmation retries"""
        tasks = [p.task for p in self._pending.values() if p.task is not None]
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _try_send(self, conversation: Conversation, send_confirmation: ConfirmationSender) -> bool:
        try:
            report = await send_confirmation()
        except TransportError as e:
            logger.warning("Confirmation for %s failed: %s", conversation.conversation_id, e)
            return False

        if not report.delivered:
            logger.info("Confirmation for %s not delivered (delivered_count=%d)",
                        conversation.conversation_id, report.delivered_count)
            return False

        current = self.storage.get_conversation(conversation.conversation_id)
        conversation.confirmed = True
        if current is not None and current.confirmed:
            # The peer's own confirmation got here first
            return True
        self.storage.set_conversation_confirmed(conversation.conversation_id, True)
        self.events.emit(ConversationConfirmed(conversation))
        return True

    def _schedule(self, conversation: Conversation, send_confirmation: ConfirmationSender, attempts: int):
        remaining = self.max_attempts - attempts
        if remaining <= 0:
            self._give_up(conversation)
            return

        delays = list(backoff_delays(self.base_delay, self.factor, remaining + 1))
        pending = PendingConfirmation(
            request_id=conversation.request_id,
            conversation_id=conversation.conversation_id,
            attempts=attempts,
            next_delay=delays[0],
        )
        self._pending[conversation.request_id] = pending
        pending.task = asyncio.create_task(self._retry_loop(pending, conversation, send_confirmation, delays))
        logger.info("Confirmation for %s rescheduled in %.2fs", conversation.conversation_id, pending.next_delay)

    async def _retry_loop(self, pending, conversation, send_confirmation, delays):
        for index, delay in enumerate(delays):
            pending.next_delay = delay
            await self.sleep(delay)
            if self._pending.get(pending.request_id) is not pending:
                return
            pending.attempts += 1
            if await self._try_send(conversation, send_confirmation):
                self._pending.pop(pending.request_id, None)
                return

        if self._pending.get(pending.request_id) is pending:
            self._pending.pop(pending.request_id, None)
            self._give_up(conversation)

    def _give_up(self, conversation: Conversation):
        logger.warning("Peer never confirmed %s; keeping it unconfirmed", conversation.conversation_id)
        self.events.emit(DeliveryFailed(
            request_id=conversation.request_id,
            reason="Contact unreachable: the conversation was created but not confirmed by the peer",
        ))

#!/usr/bin/env python3
"""
CLI Client for key exchange requests

Provides a command-line interface for:
- Creating or unlocking a local profile (identity + encrypted storage)
- Inviting peers by session id and answering their invitations
- Listing requests and materialized conversations
"""

import sys
import asyncio
import getpass
import logging
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from ker_crypto.identity import IdentityManager
from .config import KerConfig, load_config, configure_logging
from .engine import KeyExchangeEngine
from .errors import KerError
from .events import (
    EventBus,
    Event,
    RequestReceived,
    RequestAccepted,
    RequestDeclined,
    RequestRevoked,
    RequestExpired,
    ConversationCreated,
    ConversationConfirmed,
    ConversationRollback,
    DeliveryFailed,
)
from .models import RequestState
from .storage import EncryptedStorage
from .transport import RelayTransport


logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /invite <session_id> <phrase> - Send a key exchange request
  /accept <request_id> - Accept a received request
  /decline <request_id> - Decline a received request
  /revoke <request_id> - Withdraw a request you sent
  /reinvite <request_id> - Send a fresh request to the peer of a finished one
  /requests [pending] - List exchange requests
  /conversations - List conversations
  /whoami - Show your session id
  /quit - Quit application"""


class KeyExchangeClient:
    """
    Interactive front end over KeyExchangeEngine.
    """

    def __init__(self, config: KerConfig):
        """
        Initialize the client.

        Args:
            config: Client settings
        """
        self.config = config
        self.storage: Optional[EncryptedStorage] = None
        self.engine: Optional[KeyExchangeEngine] = None
        self.transport: Optional[RelayTransport] = None
        self.events = EventBus()
        self.running = False

        self.events.subscribe(self._print_event)

    def open_profile(self, profile: str, password: str, display_name: Optional[str] = None) -> bool:
        """
        Unlock (or create) a profile and wire up the engine.

        Returns:
            True if the storage was unlocked
        """
        self.storage = EncryptedStorage(profile, self.config.storage_dir)
        if not self.storage.unlock(password):
            print("Failed to unlock storage with this password")
            return False

        identity = IdentityManager(self.storage).load_or_create()
        self.transport = RelayTransport(
            self.config.relay_url,
            identity,
            timeout=self.config.send_timeout_seconds,
        )
        self.engine = KeyExchangeEngine(
            identity,
            self.storage,
            self.transport,
            config=self.config,
            events=self.events,
            display_name=display_name or profile,
        )
        self.transport.on_reconnect = self.engine.resume
        print(f"Your session id: {identity.session_id}")
        return True

    async def run_interactive(self):
        """Run interactive session"""
        self.running = True
        await self.engine.start()
        listen_task = asyncio.create_task(self.transport.listen())

        session = PromptSession()
        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    with patch_stdout():
                        user_input = await session.prompt_async("> ")

                    user_input = user_input.strip()
                    if not user_input:
                        continue
                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    else:
                        print("Commands start with '/'. Type /help for help.")

                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            listen_task.cancel()
            await asyncio.gather(listen_task, return_exceptions=True)
            await self.engine.close()
            await self.transport.close()
            if self.storage:
                self.storage.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=2)
        cmd = parts[0].lower()
        args = parts[1:]

        try:
            if cmd == "/invite" and len(args) == 2:
                request_id = await self.engine.send_request(args[0], args[1])
                print(f"Request {request_id} sent")
            elif cmd == "/accept" and len(args) == 1:
                conversation = await self.engine.accept(self._resolve(args[0]))
                print(f"Accepted; conversation {conversation.conversation_id}")
            elif cmd == "/decline" and len(args) == 1:
                if not await self.engine.decline(self._resolve(args[0])):
                    print("Request is already finished")
            elif cmd == "/revoke" and len(args) == 1:
                if not await self.engine.revoke(self._resolve(args[0])):
                    print("Request is already finished")
            elif cmd == "/reinvite" and len(args) == 1:
                request_id = await self.engine.reinvite(self._resolve(args[0]))
                print(f"Request {request_id} sent")
            elif cmd == "/requests":
                self._list_requests(pending_only=bool(args and args[0] == "pending"))
            elif cmd == "/conversations":
                self._list_conversations()
            elif cmd == "/whoami":
                print(f"Session id: {self.engine.identity.session_id}")
            elif cmd == "/quit":
                self.running = False
            elif cmd == "/help":
                print(HELP_TEXT)
            else:
                print("Unknown command. Type /help for help.")
        except KerError as e:
            print(f"Error: {e}")

    def _resolve(self, prefix: str) -> str:
        """Expand a unique request id prefix"""
        matches = [r.request_id for r in self.engine.list_requests() if r.request_id.startswith(prefix)]
        if len(matches) == 1:
            return matches[0]
        return prefix

    def _list_requests(self, pending_only: bool = False):
        states = [RequestState.CREATED, RequestState.SENT] if pending_only else None
        requests = self.engine.list_requests(states=states)
        if not requests:
            print("No requests")
            return
        print("Requests:")
        for request in requests:
            peer = request.peer_display_name or request.peer_session_id
            print(f"  - {request.request_id[:8]} {request.role.value:9} {request.state.value:8} "
                  f"{peer}: {request.phrase}")

    def _list_conversations(self):
        conversations = self.storage.list_conversations()
        if not conversations:
            print("No conversations")
            return
        print("Conversations:")
        for conversation in conversations:
            status = "confirmed" if conversation.confirmed else "waiting for peer"
            print(f"  - {conversation.conversation_id} ({status})")

    def _print_event(self, event: Event):
        if isinstance(event, RequestReceived):
            request = event.request
            sender = request.peer_display_name or request.initiator_session_id
            print(f"\n[Key exchange request {request.request_id[:8]} from {sender}: {request.phrase}]")
        elif isinstance(event, RequestAccepted):
            print(f"\n[Request {event.request.request_id[:8]} accepted]")
        elif isinstance(event, RequestDeclined):
            print(f"\n[Request {event.request.request_id[:8]} declined]")
        elif isinstance(event, RequestRevoked):
            print(f"\n[Request {event.request.request_id[:8]} revoked]")
        elif isinstance(event, RequestExpired):
            print(f"\n[Request {event.request.request_id[:8]} expired]")
        elif isinstance(event, ConversationCreated):
            print(f"\n[Conversation {event.conversation.conversation_id} created]")
        elif isinstance(event, ConversationConfirmed):
            print(f"\n[Conversation {event.conversation.conversation_id} confirmed]")
        elif isinstance(event, ConversationRollback):
            print(f"\n[Could not create conversation for {event.request_id[:8]}: {event.reason}]")
        elif isinstance(event, DeliveryFailed):
            print(f"\n[{event.reason}]")


async def main():
    """Main entry point"""
    config = load_config()
    configure_logging(config.log_level)
    client = KeyExchangeClient(config)

    print("=" * 50)
    print("Key Exchange Client")
    print("=" * 50)
    print()

    profile = input("Profile: ").strip()
    if not profile:
        return
    password = getpass.getpass("Password: ")
    display_name = input("Display name (optional): ").strip() or None

    if client.open_profile(profile, password, display_name):
        await client.run_interactive()

    print("\nGoodbye!")


def run():
    """Console script entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()

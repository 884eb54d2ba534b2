"""
Notification transport

The engine only relies on the NotificationTransport contract: a best-effort
asynchronous send returning a delivery report, and a receive callback.
RelayTransport implements it against the ker_relay push service using HTTP
for sends and a websocket for the push stream.
"""

import json
import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx
import websockets

from ker_crypto.identity import Identity
from .errors import TransportError, InvalidRecipient
from .models import Envelope, DeliveryReport
from .retry import backoff_delays


logger = logging.getLogger(__name__)

ReceiveHandler = Callable[[Envelope], None]
ReconnectHandler = Callable[[], Awaitable[None]]


class NotificationTransport:
    """
    Best-effort push channel.

    Subclasses implement send(); inbound pushes are handed to the registered
    receive handler via deliver().
    """

    def __init__(self):
        self._receive_handler: Optional[ReceiveHandler] = None

    def set_receive_handler(self, handler: ReceiveHandler):
        self._receive_handler = handler

    async def send(self, recipient_session_id: str, encrypted_payload: str, notification_type: str) -> DeliveryReport:
        """
        Send one notification.

        Returns:
            DeliveryReport; delivered_count == 0 is reachable-but-undelivered

        Raises:
            TransportError: The push service could not be reached or refused
        """
        raise NotImplementedError

    def deliver(self, envelope: Envelope):
        """Hand an inbound push to the receive handler"""
        if self._receive_handler is None:
            logger.warning("Dropping %s push: no receive handler", envelope.notification_type)
            return
        self._receive_handler(envelope)

    async def close(self):
        pass


class RelayTransport(NotificationTransport):
    """
    Transport backed by the ker_relay service.

    Args:
        relay_url: Base URL of the relay (http or https)
        identity: Local identity, registered with the relay on first use
        timeout: Per-request timeout in seconds
        reconnect_base_delay: First delay between websocket reconnects
        reconnect_max_delay: Cap for the reconnect delay
    """

    def __init__(
        self,
        relay_url: str,
        identity: Identity,
        timeout: float = 10.0,
        reconnect_base_delay: float = 0.5,
        reconnect_max_delay: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__()
        self.relay_url = relay_url.rstrip("/")
        self.ws_url = self.relay_url.replace("http", "ws", 1) + "/ws"
        self.identity = identity
        self.timeout = timeout
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.token: Optional[str] = None
        self.on_reconnect: Optional[ReconnectHandler] = None
        self.running = False

    async def register(self) -> str:
        """
        Register our session id with the relay and obtain a bearer token.

        Raises:
            TransportError: If the relay is unreachable or rejects the registration
        """
        try:
            response = await self.http_client.post(
                f"{self.relay_url}/api/sessions",
                json=self.identity.public_dict(),
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Relay unreachable: {e}") from e

        if response.status_code != 200:
            raise TransportError(f"Registration rejected ({response.status_code}): {_detail(response)}")

        self.token = response.json()["access_token"]
        logger.info("Registered session %s with relay", self.identity.session_id)
        return self.token

    async def send(self, recipient_session_id: str, encrypted_payload: str, notification_type: str) -> DeliveryReport:
        if self.token is None:
            await self.register()

        try:
            response = await self.http_client.post(
                f"{self.relay_url}/api/notify",
                json={
                    "recipient_session_id": recipient_session_id,
                    "notification_type": notification_type,
                    "encrypted_body": encrypted_payload,
                },
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Send timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Relay unreachable: {e}") from e

        if response.status_code == 401:
            # Token expired; re-register on the next attempt
            self.token = None
            raise TransportError("Relay rejected our token")
        if response.status_code == 422:
            raise InvalidRecipient(f"Relay rejected recipient {recipient_session_id}")
        if response.status_code != 200:
            raise TransportError(f"Relay error ({response.status_code}): {_detail(response)}")

        data = response.json()
        return DeliveryReport(
            accepted=bool(data.get("accepted")),
            delivered_count=int(data.get("delivered_count", 0)),
        )

    async def listen(self):
        """
        Receive pushes until close() is called, reconnecting with backoff.

        After every successful (re)connection the on_reconnect hook runs so
        pending exchange state can be resumed.
        """
        self.running = True
        failures = 0
        while self.running:
            try:
                if self.token is None:
                    await self.register()
                async with websockets.connect(self.ws_url) as websocket:
                    await websocket.send(json.dumps({"type": "auth", "token": self.token}))
                    reply = json.loads(await websocket.recv())
                    if reply.get("type") != "auth_success":
                        self.token = None
                        raise TransportError(f"Relay refused websocket auth: {reply.get('message')}")

                    failures = 0
                    logger.info("Push stream connected")
                    if self.on_reconnect is not None:
                        await self.on_reconnect()

                    async for raw in websocket:
                        self._handle_frame(raw)

            except asyncio.CancelledError:
                raise
            except (OSError, TransportError, websockets.exceptions.WebSocketException) as e:
                if not self.running:
                    break
                failures += 1
                delay = self._reconnect_delay(failures)
                logger.warning("Push stream lost (%s), reconnecting in %.1fs", e, delay)
                await asyncio.sleep(delay)

    def _handle_frame(self, raw):
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-JSON frame from relay")
            return

        if data.get("type") != "push":
            return
        try:
            envelope = Envelope.from_dict(data)
        except ValueError as e:
            logger.warning("Ignoring malformed push: %s", e)
            return
        self.deliver(envelope)

    def _reconnect_delay(self, failures: int) -> float:
        delay = self.reconnect_base_delay
        for delay in backoff_delays(self.reconnect_base_delay, 2.0, failures + 1):
            pass
        return min(delay, self.reconnect_max_delay)

    async def close(self):
        self.running = False
        await self.http_client.aclose()


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except ValueError:
        return response.text

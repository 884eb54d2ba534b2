"""
Data model for key exchange requests, contacts and conversations.
"""

from enum import Enum
from typing import Dict, Optional, Tuple
from datetime import datetime, timezone
from dataclasses import dataclass, field


class RequestState(str, Enum):
    """Lifecycle of an exchange request. Transitions only move forward."""
    CREATED = "created"
    SENT = "sent"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    REVOKED = "revoked"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    RequestState.ACCEPTED,
    RequestState.DECLINED,
    RequestState.REVOKED,
    RequestState.EXPIRED,
})

ALLOWED_TRANSITIONS = {
    # A peer answer proves a request arrived even if its send never reported success
    RequestState.CREATED: frozenset({
        RequestState.SENT,
        RequestState.ACCEPTED,
        RequestState.DECLINED,
        RequestState.REVOKED,
        RequestState.EXPIRED,
    }),
    RequestState.SENT: frozenset({
        RequestState.ACCEPTED,
        RequestState.DECLINED,
        RequestState.REVOKED,
        RequestState.EXPIRED,
    }),
}


class Role(str, Enum):
    """Which side of the exchange this local record belongs to"""
    INITIATOR = "initiator"
    RECIPIENT = "recipient"


class NotificationType(str, Enum):
    """Cleartext notification types carried next to the encrypted body"""
    REQUEST = "key_exchange_request"
    ACCEPTED = "key_exchange_accepted"
    DECLINED = "key_exchange_declined"
    REVOKED = "key_exchange_revoked"
    CONVERSATION_CREATED = "conversation_created"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ExchangeRequest:
    """
    One side's copy of a key exchange request.

    Attributes:
        request_id: Globally unique id chosen by the initiator
        initiator_session_id: Session id of the side that sent the request
        recipient_session_id: Session id of the side being invited
        initiator_public_key: Initiator's raw X25519 public key
        phrase: Human-readable context string
        state: Current RequestState
        created_at: When the initiator created the request
        expires_at: After this, a non-terminal request is expired by the sweep
        role: Whether we are the initiator or the recipient
        request_key: Per-request symmetric key (stored encrypted at rest)
        responder_public_key: Recipient's public key, once known
        responded_at: When the request reached accepted/declined
        peer_display_name: Display name the peer shared with us
    """
    request_id: str
    initiator_session_id: str
    recipient_session_id: str
    initiator_public_key: bytes
    phrase: str
    state: RequestState
    created_at: datetime
    expires_at: datetime
    role: Role
    request_key: bytes = field(repr=False)
    responder_public_key: Optional[bytes] = None
    responded_at: Optional[datetime] = None
    peer_display_name: Optional[str] = None

    @property
    def peer_session_id(self) -> str:
        if self.role == Role.INITIATOR:
            return self.recipient_session_id
        return self.initiator_session_id

    @property
    def local_session_id(self) -> str:
        if self.role == Role.INITIATOR:
            return self.initiator_session_id
        return self.recipient_session_id

    @property
    def peer_public_key(self) -> Optional[bytes]:
        if self.role == Role.INITIATOR:
            return self.responder_public_key
        return self.initiator_public_key

    def is_overdue(self, now: datetime) -> bool:
        return not self.state.is_terminal and now >= self.expires_at

    def can_transition(self, target: RequestState) -> bool:
        return target in ALLOWED_TRANSITIONS.get(self.state, frozenset())


@dataclass
class ExchangeResponse:
    """
    Recipient's acceptance as seen by the initiator.

    Attributes:
        request_id: Request being answered
        responder_public_key: Recipient's raw X25519 public key
        encrypted_user_data: User data sealed with the new session key
        responded_at: When the recipient accepted
    """
    request_id: str
    responder_public_key: bytes
    encrypted_user_data: Dict
    responded_at: datetime


@dataclass
class Contact:
    """A peer we completed a key exchange with"""
    session_id: str
    public_key: bytes
    display_name: Optional[str]
    created_at: datetime


@dataclass
class Conversation:
    """
    A materialized conversation between exactly two session ids.

    Attributes:
        conversation_id: Same value on both sides (see conversation_id_for)
        participant_session_ids: Both session ids, sorted
        shared_key_ref: Reference into the session key table
        created_at: Local creation time
        request_id: Exchange request this conversation came from
        confirmed: False until the peer is known to have received our notice
    """
    conversation_id: str
    participant_session_ids: Tuple[str, str]
    shared_key_ref: str
    created_at: datetime
    request_id: str
    confirmed: bool = False


def pair_id(first: str, second: str) -> str:
    """Order-independent identifier for a pair of session ids"""
    a, b = sorted([first, second])
    return f"{a}:{b}"


def conversation_id_for(first: str, second: str) -> str:
    """Conversation id both sides compute independently"""
    a, b = sorted([first, second])
    return f"chat_{a}_{b}"


@dataclass(frozen=True)
class Envelope:
    """
    What the notification transport carries.

    Only recipient_session_id and notification_type are cleartext; the body
    is an opaque string sealed with the recipient's routing key.
    """
    recipient_session_id: str
    notification_type: str
    encrypted_body: str

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'recipient_session_id': self.recipient_session_id,
            'notification_type': self.notification_type,
            'encrypted_body': self.encrypted_body,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Envelope':
        """
        Create from dictionary.

        Raises:
            ValueError: If a field is missing or not a string
        """
        try:
            values = {
                'recipient_session_id': data['recipient_session_id'],
                'notification_type': data['notification_type'],
                'encrypted_body': data['encrypted_body'],
            }
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed envelope: {e}")
        for name, value in values.items():
            if not isinstance(value, str):
                raise ValueError(f"Malformed envelope: {name} must be a string")
        return cls(**values)


@dataclass(frozen=True)
class DeliveryReport:
    """
    Result of a transport send.

    delivered_count == 0 means the recipient was reachable but nothing was
    delivered (offline or unregistered). It is not a hard failure.
    """
    accepted: bool
    delivered_count: int

    @property
    def delivered(self) -> bool:
        return self.accepted and self.delivered_count > 0

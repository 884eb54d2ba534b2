"""
Key Exchange Request client.

Lets two identities that have never talked agree on a per-peer session key
through an untrusted push relay, then materializes a contact and a
conversation on both sides.
"""

from .config import KerConfig, load_config, configure_logging
from .engine import KeyExchangeEngine
from .errors import (
    KerError,
    InvalidRecipient,
    TransportError,
    ProtocolError,
    DuplicateError,
    RollbackError,
    CryptoError,
    DecryptionError,
    IntegrityError,
)
from .events import EventBus
from .models import (
    RequestState,
    Role,
    NotificationType,
    ExchangeRequest,
    ExchangeResponse,
    Contact,
    Conversation,
    Envelope,
    DeliveryReport,
)
from .storage import EncryptedStorage, StorageError
from .transport import NotificationTransport, RelayTransport

__all__ = [
    'KerConfig',
    'load_config',
    'configure_logging',
    'KeyExchangeEngine',
    'KerError',
    'InvalidRecipient',
    'TransportError',
    'ProtocolError',
    'DuplicateError',
    'RollbackError',
    'CryptoError',
    'DecryptionError',
    'IntegrityError',
    'EventBus',
    'RequestState',
    'Role',
    'NotificationType',
    'ExchangeRequest',
    'ExchangeResponse',
    'Contact',
    'Conversation',
    'Envelope',
    'DeliveryReport',
    'EncryptedStorage',
    'StorageError',
    'NotificationTransport',
    'RelayTransport',
]

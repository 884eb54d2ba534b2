"""
Error taxonomy for the key exchange pipeline.

Crypto failures (DecryptionError, IntegrityError) live in ker_crypto and are
re-exported here so callers can import every error from one place.
"""

from ker_crypto.primitives import CryptoError, DecryptionError, IntegrityError


class KerError(Exception):
    """Base exception for key exchange errors"""
    pass


class InvalidRecipient(KerError):
    """Recipient session id is malformed; nothing was sent"""
    pass


class TransportError(KerError):
    """The notification transport failed or timed out. Transient, retryable."""
    pass


class ProtocolError(KerError):
    """A state transition was attempted that the protocol does not allow"""
    pass


class DuplicateError(KerError):
    """Suppressed by the delivery deduplicator"""
    pass


class RollbackError(KerError):
    """
    Conversation materialization failed part way.

    Attributes:
        rolled_back: True if the partial contact was removed again, False if
            local state is left inconsistent
    """

    def __init__(self, message: str, rolled_back: bool = True):
        super().__init__(message)
        self.rolled_back = rolled_back


__all__ = [
    'CryptoError',
    'DecryptionError',
    'IntegrityError',
    'KerError',
    'InvalidRecipient',
    'TransportError',
    'ProtocolError',
    'DuplicateError',
    'RollbackError',
]

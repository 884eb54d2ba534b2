"""
Cryptographic module for the Key Exchange Request protocol.

Implements:
- Identities: X25519 keypairs and the session ids derived from them
- Payload encryption: AES-256-GCM with SHA-256 plaintext checksums
- Per-peer session key derivation from a completed handshake
"""

from .primitives import (
    generate_dh_keypair,
    dh_exchange,
    encrypt_message,
    decrypt_message,
    CryptoError,
    DecryptionError,
    IntegrityError,
)
from .identity import Identity, IdentityManager, SESSION_ID_LENGTH
from .payload import SealedPayload, encrypt, decrypt, seal_json, open_json

__all__ = [
    'generate_dh_keypair',
    'dh_exchange',
    'encrypt_message',
    'decrypt_message',
    'CryptoError',
    'DecryptionError',
    'IntegrityError',
    'Identity',
    'IdentityManager',
    'SESSION_ID_LENGTH',
    'SealedPayload',
    'encrypt',
    'decrypt',
    'seal_json',
    'open_json',
]

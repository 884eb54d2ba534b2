"""
Handshake payload encryption

Every handshake payload is encrypted with AES-256-GCM and accompanied by a
SHA-256 checksum of the plaintext. The checksum is verified after decryption,
independently of the cipher's own authentication.

Keys used here:
- routing key: derived from the recipient's session id, seals the outer
  envelope body so the transport only ever sees recipient and type
- request key: random per exchange request, seals every follow-up message
- session key: derived from the completed X25519 handshake, unique per peer
  pair and exchange
"""

import os
import json
import base64
from typing import Any, Dict
from dataclasses import dataclass
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .primitives import (
    KEY_SIZE,
    CryptoError,
    DecryptionError,
    IntegrityError,
    encrypt_message,
    decrypt_message,
    sha256_checksum,
    hkdf_derive,
    dh_exchange,
    deserialize_public_key,
    constant_time_compare,
)


ROUTING_KEY_INFO = b"ker-routing-v1"
SESSION_KEY_INFO = b"ker-session-v1"


@dataclass(frozen=True)
class SealedPayload:
    """
    Ciphertext and the plaintext checksum that travels with it.

    Attributes:
        ciphertext: nonce + AES-GCM ciphertext + tag
        checksum: hex SHA-256 of the plaintext
    """
    ciphertext: bytes
    checksum: str

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'ciphertext': base64.b64encode(self.ciphertext).decode("ascii"),
            'checksum': self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'SealedPayload':
        """Create from dictionary"""
        try:
            return cls(
                ciphertext=base64.b64decode(data['ciphertext'], validate=True),
                checksum=str(data['checksum'])
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DecryptionError(f"Malformed sealed payload: {e}")


def encrypt(plaintext: bytes, key: bytes) -> SealedPayload:
    """
    Encrypt plaintext and compute its integrity checksum.

    Args:
        plaintext: Bytes to protect
        key: 32-byte symmetric key

    Returns:
        SealedPayload
    """
    return SealedPayload(
        ciphertext=encrypt_message(key, plaintext),
        checksum=sha256_checksum(plaintext)
    )


def decrypt(ciphertext: bytes, checksum: str, key: bytes) -> bytes:
    """
    Decrypt ciphertext and verify the plaintext checksum.

    Raises:
        DecryptionError: If the cipher rejects the ciphertext
        IntegrityError: If the recomputed checksum does not match
    """
    plaintext = decrypt_message(key, ciphertext)
    expected = sha256_checksum(plaintext).encode("ascii")
    if not constant_time_compare(expected, str(checksum).encode("ascii", "replace")):
        raise IntegrityError("Payload checksum mismatch")
    return plaintext


def seal_json(data: Dict[str, Any], key: bytes) -> Dict:
    """Encrypt a JSON-serializable dict, returning a serializable sealed dict"""
    plaintext = json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return encrypt(plaintext, key).to_dict()


def open_json(sealed: Dict, key: bytes) -> Dict[str, Any]:
    """
    Inverse of seal_json.

    Raises:
        DecryptionError: Malformed container, cipher failure or non-JSON plaintext
        IntegrityError: Checksum mismatch
    """
    if not isinstance(sealed, dict):
        raise DecryptionError("Sealed payload must be an object")
    payload = SealedPayload.from_dict(sealed)
    plaintext = decrypt(payload.ciphertext, payload.checksum, key)
    try:
        data = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise DecryptionError(f"Payload is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise DecryptionError("Payload must decode to an object")
    return data


def derive_routing_key(session_id: str) -> bytes:
    """Key sealing envelope bodies addressed to session_id"""
    return hkdf_derive(session_id.encode("ascii"), salt=None, info=ROUTING_KEY_INFO)


def generate_request_key() -> bytes:
    """Fresh random key for one exchange request"""
    return os.urandom(KEY_SIZE)


def derive_session_key(
    private_key: X25519PrivateKey,
    peer_public_key: bytes,
    local_session_id: str,
    peer_session_id: str,
    request_id: str,
) -> bytes:
    """
    Derive the per-peer session key for a completed handshake.

    Both sides compute the same value: the X25519 shared secret is salted by
    the request id and bound to both session ids in sorted order.

    Raises:
        CryptoError: If the peer public key is malformed
    """
    if local_session_id == peer_session_id:
        raise CryptoError("Cannot derive a session key with ourselves")
    try:
        shared_secret = dh_exchange(private_key, deserialize_public_key(peer_public_key))
    except ValueError as e:
        raise CryptoError(f"Key agreement failed: {e}")

    first, second = sorted([local_session_id, peer_session_id])
    info = SESSION_KEY_INFO + b":" + first.encode("ascii") + b":" + second.encode("ascii")
    return hkdf_derive(shared_secret, salt=request_id.encode("utf-8"), info=info)

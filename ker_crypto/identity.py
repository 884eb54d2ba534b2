"""
Long-term identities and session identifiers

An identity is an X25519 keypair plus a session id derived from the public
key. The session id is the only thing peers and the relay ever use to route
notifications; the private key never leaves the encrypted local store.
"""

import re
import base64
import hashlib
from typing import Dict, Optional
from dataclasses import dataclass, field
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .primitives import (
    CryptoError,
    generate_dh_keypair,
    serialize_public_key,
    serialize_private_key,
    deserialize_private_key,
)


SESSION_ID_LENGTH = 32
SESSION_ID_PATTERN = re.compile(r"^[a-z2-7]{%d}$" % SESSION_ID_LENGTH)


@dataclass(frozen=True)
class Identity:
    """
    A local identity.

    Attributes:
        public_key: Raw 32-byte X25519 public key
        private_key: X25519 private key (never transmitted)
        session_id: Routing address derived from public_key
    """
    public_key: bytes
    private_key: X25519PrivateKey = field(repr=False, compare=False)
    session_id: str

    def public_dict(self) -> Dict:
        """Public part of the identity, safe to hand to the relay"""
        return {
            'session_id': self.session_id,
            'public_key': self.public_key.hex(),
        }


class IdentityManager:
    """
    Creates, validates and persists identities.

    Persistence goes through a key store exposing ``save_keys``/``load_keys``
    (the encrypted client storage); nothing else ever sees the private key.
    """

    KEY_TYPE = "identity"

    def __init__(self, key_store=None):
        self.key_store = key_store

    @staticmethod
    def derive_session_id(public_key: bytes) -> str:
        """
        Derive the session id for a public key.

        base32(sha256(public_key)), lowercased, truncated to SESSION_ID_LENGTH.
        """
        if len(public_key) != 32:
            raise CryptoError("Invalid X25519 public key length")
        digest = hashlib.sha256(public_key).digest()
        encoded = base64.b32encode(digest).decode("ascii").lower().rstrip("=")
        return encoded[:SESSION_ID_LENGTH]

    @staticmethod
    def validate_session_id(session_id) -> bool:
        """Check the fixed length and allowed character set of a session id"""
        if not isinstance(session_id, str):
            return False
        return SESSION_ID_PATTERN.match(session_id) is not None

    @classmethod
    def matches_public_key(cls, session_id: str, public_key: bytes) -> bool:
        """True if session_id is the one derived from public_key"""
        try:
            return cls.derive_session_id(public_key) == session_id
        except CryptoError:
            return False

    def generate_identity(self) -> Identity:
        """
        Generate a fresh identity.

        Returns:
            Identity with a new keypair and its derived session id
        """
        private_key, public_key = generate_dh_keypair()
        public_bytes = serialize_public_key(public_key)
        return Identity(
            public_key=public_bytes,
            private_key=private_key,
            session_id=self.derive_session_id(public_bytes)
        )

    def save(self, identity: Identity):
        """Persist identity into the encrypted key store"""
        if self.key_store is None:
            raise ValueError("No key store configured")
        self.key_store.save_keys(self.KEY_TYPE, {
            'session_id': identity.session_id,
            'public': identity.public_key.hex(),
            'private': serialize_private_key(identity.private_key).hex(),
        })

    def load(self) -> Optional[Identity]:
        """
        Load the persisted identity.

        Returns:
            Identity or None if none has been saved yet

        Raises:
            CryptoError: If the stored key material is inconsistent
        """
        if self.key_store is None:
            return None
        data = self.key_store.load_keys(self.KEY_TYPE)
        if not data:
            return None

        private_key = deserialize_private_key(bytes.fromhex(data['private']))
        public_bytes = serialize_public_key(private_key.public_key())
        if public_bytes.hex() != data['public']:
            raise CryptoError("Stored identity keys do not match")

        return Identity(
            public_key=public_bytes,
            private_key=private_key,
            session_id=self.derive_session_id(public_bytes)
        )

    def load_or_create(self) -> Identity:
        """Load the stored identity, generating and saving one on first run"""
        identity = self.load()
        if identity is None:
            identity = self.generate_identity()
            self.save(identity)
        return identity

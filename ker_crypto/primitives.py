"""
Cryptographic Primitives for the Key Exchange Request protocol

This module provides the foundational cryptographic operations used by the
handshake: X25519 key agreement, HKDF key derivation, AES-256-GCM payload
encryption and SHA-256 integrity checksums.
"""

import os
import hmac
import hashlib
from typing import Tuple
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class DecryptionError(CryptoError):
    """The cipher rejected the ciphertext (wrong key, truncated or tampered)"""
    pass


class IntegrityError(CryptoError):
    """Plaintext checksum does not match the one sent alongside the ciphertext"""
    pass


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair for key exchange.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """
    Perform Diffie-Hellman key exchange.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret
    """
    return private_key.exchange(public_key)


def hkdf_derive(input_key: bytes, salt: bytes, info: bytes, length: int = KEY_SIZE) -> bytes:
    """
    Derive key material with HKDF-SHA256.

    Args:
        input_key: Input key material
        salt: HKDF salt
        info: Context binding for the derived key
        length: Number of bytes to derive

    Returns:
        Derived key bytes
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info
    )
    return hkdf.derive(input_key)


def encrypt_message(key: bytes, plaintext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    check_key(key)
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, associated_data)
    return nonce + ciphertext


def decrypt_message(key: bytes, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        ciphertext: nonce + encrypted message + tag
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext

    Raises:
        DecryptionError: If decryption fails
    """
    check_key(key)
    if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("Ciphertext too short")

    nonce = ciphertext[:NONCE_SIZE]
    actual_ciphertext = ciphertext[NONCE_SIZE:]

    aesgcm = AESGCM(key)
    try:
        return aesgcm.decrypt(nonce, actual_ciphertext, associated_data)
    except InvalidTag:
        raise DecryptionError("Decryption failed: authentication tag mismatch")


def sha256_checksum(data: bytes) -> str:
    """Hex SHA-256 digest of data"""
    return hashlib.sha256(data).hexdigest()


def check_key(key: bytes):
    """Reject anything that is not a 32-byte symmetric key"""
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise CryptoError(f"Expected a {KEY_SIZE}-byte key")


def serialize_public_key(public_key: X25519PublicKey) -> bytes:
    """Serialize X25519 public key to bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def deserialize_public_key(key_bytes: bytes) -> X25519PublicKey:
    """Deserialize bytes to X25519 public key"""
    if len(key_bytes) != KEY_SIZE:
        raise CryptoError("Invalid X25519 public key length")
    return X25519PublicKey.from_public_bytes(key_bytes)


def serialize_private_key(private_key: X25519PrivateKey) -> bytes:
    """Serialize X25519 private key to raw bytes (for the encrypted store only)"""
    return private_key.private_bytes_raw()


def deserialize_private_key(key_bytes: bytes) -> X25519PrivateKey:
    """Deserialize raw bytes to X25519 private key"""
    if len(key_bytes) != KEY_SIZE:
        raise CryptoError("Invalid X25519 private key length")
    return X25519PrivateKey.from_private_bytes(key_bytes)


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)

"""
Encrypted local storage for the key exchange client.

Stores the identity, exchange requests, per-peer session keys, contacts and
conversations in SQLite. Key material and free text are encrypted on disk.
"""

import os
import json
import sqlite3
import logging
from typing import Optional, List, Dict, Iterable
from pathlib import Path
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .models import (
    ExchangeRequest,
    RequestState,
    Role,
    Contact,
    Conversation,
    to_timestamp,
    from_timestamp,
)


logger = logging.getLogger(__name__)

_CHECK_VALUE = b"ker-storage-check"


class StorageError(Exception):
    """Storage is locked, or a record conflicts with an existing one"""
    pass


class EncryptedStorage:
    """
    Manages encrypted local storage for key exchange state.

    All sensitive columns are encrypted with a key derived from the user's
    password.
    """

    def __init__(self, profile: str, storage_dir: str = "client_data"):
        """
        Initialize encrypted storage.

        Args:
            profile: Profile name for this storage
            storage_dir: Directory to store encrypted data
        """
        self.profile = profile
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{profile}.db"
        self.salt_path = self.storage_dir / f"{profile}.salt"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive encryption key from password using PBKDF2.

        Args:
            password: User's password
            salt: Salt for key derivation

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        return kdf.derive(password.encode())

    def unlock(self, password: str) -> bool:
        """
        Unlock storage with password.

        Args:
            password: User's password

        Returns:
            True if unlocked, False if the password is wrong
        """
        if not self.db_path.exists() or not self.salt_path.exists():
            salt = os.urandom(16)
            self.encryption_key = self.derive_key(password, salt)
            with open(self.salt_path, "wb") as f:
                f.write(salt)

            self._init_database()
            self._set_metadata("check", _CHECK_VALUE)
            return True

        with open(self.salt_path, "rb") as f:
            salt = f.read()

        self.encryption_key = self.derive_key(password, salt)
        self._init_database()

        try:
            if self._get_metadata("check") == _CHECK_VALUE:
                return True
        except InvalidTag:
            pass

        logger.warning("Wrong password for profile %s", self.profile)
        self.close()
        self.encryption_key = None
        return False

    @property
    def is_unlocked(self) -> bool:
        return self.db is not None and self.encryption_key is not None

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path))
        cursor = self.db.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS exchange_requests (
                request_id TEXT PRIMARY KEY,
                role TEXT NOT NULL,
                state TEXT NOT NULL,
                initiator_session_id TEXT NOT NULL,
                recipient_session_id TEXT NOT NULL,
                initiator_public_key TEXT NOT NULL,
                responder_public_key TEXT,
                encrypted_phrase BLOB NOT NULL,
                encrypted_request_key BLOB NOT NULL,
                encrypted_display_name BLOB,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                responded_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS session_keys (
                pair_ref TEXT PRIMARY KEY,
                encrypted_key BLOB NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS contacts (
                session_id TEXT PRIMARY KEY,
                public_key TEXT NOT NULL,
                encrypted_display_name BLOB,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id TEXT PRIMARY KEY,
                participant_a TEXT NOT NULL,
                participant_b TEXT NOT NULL,
                shared_key_ref TEXT NOT NULL,
                request_id TEXT NOT NULL,
                confirmed INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                encrypted_value BLOB NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS keys (
                key_type TEXT PRIMARY KEY,
                encrypted_data BLOB NOT NULL
            )
        """)

        self.db.commit()

    def _require_db(self) -> sqlite3.Connection:
        if not self.is_unlocked:
            raise StorageError("Storage not unlocked")
        return self.db

    def _encrypt(self, data: bytes) -> bytes:
        """Encrypt data with storage key"""
        if not self.encryption_key:
            raise StorageError("Storage not unlocked")

        nonce = os.urandom(12)
        aesgcm = AESGCM(self.encryption_key)
        ciphertext = aesgcm.encrypt(nonce, data, None)
        return nonce + ciphertext

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data with storage key"""
        if not self.encryption_key:
            raise StorageError("Storage not unlocked")

        nonce = encrypted_data[:12]
        ciphertext = encrypted_data[12:]

        aesgcm = AESGCM(self.encryption_key)
        return aesgcm.decrypt(nonce, ciphertext, None)

    def _encrypt_text(self, value: Optional[str]) -> Optional[bytes]:
        return self._encrypt(value.encode()) if value is not None else None

    def _decrypt_text(self, value: Optional[bytes]) -> Optional[str]:
        return self._decrypt(value).decode() if value is not None else None

    # Exchange requests

    def save_request(self, request: ExchangeRequest):
        """
        Insert or update an exchange request record.

        Args:
            request: Record to persist
        """
        db = self._require_db()
        db.execute(
            """
            INSERT OR REPLACE INTO exchange_requests (
                request_id, role, state, initiator_session_id, recipient_session_id,
                initiator_public_key, responder_public_key, encrypted_phrase,
                encrypted_request_key, encrypted_display_name, created_at, expires_at, responded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.request_id,
                request.role.value,
                request.state.value,
                request.initiator_session_id,
                request.recipient_session_id,
                request.initiator_public_key.hex(),
                request.responder_public_key.hex() if request.responder_public_key else None,
                self._encrypt(request.phrase.encode()),
                self._encrypt(request.request_key),
                self._encrypt_text(request.peer_display_name),
                to_timestamp(request.created_at),
                to_timestamp(request.expires_at),
                to_timestamp(request.responded_at),
            )
        )
        db.commit()

    def load_request(self, request_id: str) -> Optional[ExchangeRequest]:
        """
        Load an exchange request.

        Args:
            request_id: Id of the request

        Returns:
            ExchangeRequest or None
        """
        db = self._require_db()
        cursor = db.execute(
            f"SELECT {_REQUEST_COLUMNS} FROM exchange_requests WHERE request_id = ?",
            (request_id,)
        )
        row = cursor.fetchone()
        return self._request_from_row(row) if row else None

    def list_requests(
        self,
        states: Optional[Iterable[RequestState]] = None,
        role: Optional[Role] = None,
    ) -> List[ExchangeRequest]:
        """
        List exchange requests, oldest first.

        Args:
            states: Only these states (all if None)
            role: Only this role (both if None)
        """
        db = self._require_db()
        query = f"SELECT {_REQUEST_COLUMNS} FROM exchange_requests"
        clauses = []
        params: list = []
        if states is not None:
            states = list(states)
            clauses.append(f"state IN ({', '.join('?' for _ in states)})")
            params.extend(state.value for state in states)
        if role is not None:
            clauses.append("role = ?")
            params.append(role.value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at"

        return [self._request_from_row(row) for row in db.execute(query, params).fetchall()]

    def _request_from_row(self, row) -> ExchangeRequest:
        (request_id, role, state, initiator_sid, recipient_sid, initiator_pk, responder_pk,
         encrypted_phrase, encrypted_request_key, encrypted_display_name,
         created_at, expires_at, responded_at) = row
        return ExchangeRequest(
            request_id=request_id,
            initiator_session_id=initiator_sid,
            recipient_session_id=recipient_sid,
            initiator_public_key=bytes.fromhex(initiator_pk),
            phrase=self._decrypt(encrypted_phrase).decode(),
            state=RequestState(state),
            created_at=from_timestamp(created_at),
            expires_at=from_timestamp(expires_at),
            role=Role(role),
            request_key=self._decrypt(encrypted_request_key),
            responder_public_key=bytes.fromhex(responder_pk) if responder_pk else None,
            responded_at=from_timestamp(responded_at),
            peer_display_name=self._decrypt_text(encrypted_display_name),
        )

    # Session keys

    def save_session_key(self, pair_ref: str, key: bytes, updated_at: str):
        """Store the session key for a peer pair, replacing any previous one"""
        db = self._require_db()
        db.execute(
            "INSERT OR REPLACE INTO session_keys (pair_ref, encrypted_key, updated_at) VALUES (?, ?, ?)",
            (pair_ref, self._encrypt(key), updated_at)
        )
        db.commit()

    def load_session_key(self, pair_ref: str) -> Optional[bytes]:
        db = self._require_db()
        row = db.execute(
            "SELECT encrypted_key FROM session_keys WHERE pair_ref = ?", (pair_ref,)
        ).fetchone()
        return self._decrypt(row[0]) if row else None

    def delete_session_key(self, pair_ref: str):
        db = self._require_db()
        db.execute("DELETE FROM session_keys WHERE pair_ref = ?", (pair_ref,))
        db.commit()

    # Contacts

    def create_contact(self, contact: Contact):
        """
        Insert a new contact.

        Raises:
            StorageError: If a contact with this session id already exists
        """
        db = self._require_db()
        try:
            db.execute(
                "INSERT INTO contacts (session_id, public_key, encrypted_display_name, created_at) VALUES (?, ?, ?, ?)",
                (
                    contact.session_id,
                    contact.public_key.hex(),
                    self._encrypt_text(contact.display_name),
                    to_timestamp(contact.created_at),
                )
            )
        except sqlite3.IntegrityError as e:
            db.rollback()
            raise StorageError(f"Contact {contact.session_id} already exists") from e
        db.commit()

    def get_contact(self, session_id: str) -> Optional[Contact]:
        db = self._require_db()
        row = db.execute(
            "SELECT session_id, public_key, encrypted_display_name, created_at FROM contacts WHERE session_id = ?",
            (session_id,)
        ).fetchone()
        if not row:
            return None
        return Contact(
            session_id=row[0],
            public_key=bytes.fromhex(row[1]),
            display_name=self._decrypt_text(row[2]),
            created_at=from_timestamp(row[3]),
        )

    def update_contact(self, session_id: str, public_key: bytes, display_name: Optional[str]):
        db = self._require_db()
        db.execute(
            "UPDATE contacts SET public_key = ?, encrypted_display_name = ? WHERE session_id = ?",
            (public_key.hex(), self._encrypt_text(display_name), session_id)
        )
        db.commit()

    def delete_contact(self, session_id: str):
        db = self._require_db()
        db.execute("DELETE FROM contacts WHERE session_id = ?", (session_id,))
        db.commit()

    def list_contacts(self) -> List[Contact]:
        db = self._require_db()
        rows = db.execute("SELECT session_id FROM contacts ORDER BY created_at").fetchall()
        return [self.get_contact(row[0]) for row in rows]

    # Conversations

    def create_conversation(self, conversation: Conversation):
        """
        Insert a new conversation.

        Raises:
            StorageError: If the conversation id already exists
        """
        db = self._require_db()
        first, second = conversation.participant_session_ids
        try:
            db.execute(
                """
                INSERT INTO conversations (
                    conversation_id, participant_a, participant_b, shared_key_ref,
                    request_id, confirmed, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.conversation_id,
                    first,
                    second,
                    conversation.shared_key_ref,
                    conversation.request_id,
                    int(conversation.confirmed),
                    to_timestamp(conversation.created_at),
                )
            )
        except sqlite3.IntegrityError as e:
            db.rollback()
            raise StorageError(f"Conversation {conversation.conversation_id} already exists") from e
        db.commit()

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        db = self._require_db()
        row = db.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE conversation_id = ?",
            (conversation_id,)
        ).fetchone()
        return _conversation_from_row(row) if row else None

    def find_conversation_by_request(self, request_id: str) -> Optional[Conversation]:
        db = self._require_db()
        row = db.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE request_id = ?",
            (request_id,)
        ).fetchone()
        return _conversation_from_row(row) if row else None

    def rebind_conversation(self, conversation_id: str, shared_key_ref: str, request_id: str):
        """Point an existing conversation at a newer exchange"""
        db = self._require_db()
        db.execute(
            "UPDATE conversations SET shared_key_ref = ?, request_id = ?, confirmed = 0 WHERE conversation_id = ?",
            (shared_key_ref, request_id, conversation_id)
        )
        db.commit()

    def set_conversation_confirmed(self, conversation_id: str, confirmed: bool = True):
        db = self._require_db()
        db.execute(
            "UPDATE conversations SET confirmed = ? WHERE conversation_id = ?",
            (int(confirmed), conversation_id)
        )
        db.commit()

    def list_conversations(self, unconfirmed_only: bool = False) -> List[Conversation]:
        """
        List conversations, oldest first.

        Args:
            unconfirmed_only: Only conversations still waiting for confirmation
        """
        db = self._require_db()
        query = f"SELECT {_CONVERSATION_COLUMNS} FROM conversations"
        if unconfirmed_only:
            query += " WHERE confirmed = 0"
        query += " ORDER BY created_at"
        return [_conversation_from_row(row) for row in db.execute(query).fetchall()]

    # Keys and metadata

    def save_keys(self, key_type: str, key_data: dict):
        """
        Save cryptographic keys.

        Args:
            key_type: Type of keys ('identity', ...)
            key_data: Dictionary of key data
        """
        db = self._require_db()
        encrypted = self._encrypt(json.dumps(key_data).encode())
        db.execute(
            "INSERT OR REPLACE INTO keys (key_type, encrypted_data) VALUES (?, ?)",
            (key_type, encrypted)
        )
        db.commit()

    def load_keys(self, key_type: str) -> Optional[dict]:
        """
        Load cryptographic keys.

        Args:
            key_type: Type of keys to load

        Returns:
            Dictionary of key data or None
        """
        db = self._require_db()
        row = db.execute("SELECT encrypted_data FROM keys WHERE key_type = ?", (key_type,)).fetchone()
        if not row:
            return None
        return json.loads(self._decrypt(row[0]).decode())

    def _set_metadata(self, key: str, value: bytes):
        db = self._require_db()
        db.execute(
            "INSERT OR REPLACE INTO metadata (key, encrypted_value) VALUES (?, ?)",
            (key, self._encrypt(value))
        )
        db.commit()

    def _get_metadata(self, key: str) -> Optional[bytes]:
        """Get metadata value"""
        if not self.db:
            return None

        row = self.db.execute("SELECT encrypted_value FROM metadata WHERE key = ?", (key,)).fetchone()
        if row:
            return self._decrypt(row[0])
        return None

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None


_REQUEST_COLUMNS = (
    "request_id, role, state, initiator_session_id, recipient_session_id, "
    "initiator_public_key, responder_public_key, encrypted_phrase, encrypted_request_key, "
    "encrypted_display_name, created_at, expires_at, responded_at"
)

_CONVERSATION_COLUMNS = (
    "conversation_id, participant_a, participant_b, shared_key_ref, created_at, request_id, confirmed"
)


def _conversation_from_row(row) -> Conversation:
    return Conversation(
        conversation_id=row[0],
        participant_session_ids=(row[1], row[2]),
        shared_key_ref=row[3],
        created_at=from_timestamp(row[4]),
        request_id=row[5],
        confirmed=bool(row[6]),
    )

"""
Per-peer session key table.

The only writer of session keys. Keys are looked up by the unordered pair of
session ids, so both ends of a conversation use the same reference.
"""

import logging
from typing import Optional

from ker_crypto.primitives import check_key
from .models import pair_id, utcnow, to_timestamp


logger = logging.getLogger(__name__)


class SessionKeyTable:
    """Stores and retrieves session keys through the encrypted storage"""

    def __init__(self, storage):
        self.storage = storage

    def store(self, local_session_id: str, peer_session_id: str, key: bytes) -> str:
        """
        Store the key for a peer pair.

        Returns:
            Reference to the key (used as Conversation.shared_key_ref)
        """
        check_key(key)
        ref = pair_id(local_session_id, peer_session_id)
        self.storage.save_session_key(ref, key, to_timestamp(utcnow()))
        logger.debug("Stored session key for %s", ref)
        return ref

    def get(self, local_session_id: str, peer_session_id: str) -> Optional[bytes]:
        return self.storage.load_session_key(pair_id(local_session_id, peer_session_id))

    def get_by_ref(self, ref: str) -> Optional[bytes]:
        return self.storage.load_session_key(ref)

    def restore(self, local_session_id: str, peer_session_id: str, previous: Optional[bytes]):
        """Put back the key that was stored before, or remove the pair's key if there was none"""
        ref = pair_id(local_session_id, peer_session_id)
        if previous is None:
            self.storage.delete_session_key(ref)
        else:
            self.storage.save_session_key(ref, previous, to_timestamp(utcnow()))
        logger.debug("Restored session key for %s", ref)

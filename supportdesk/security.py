import json, base64, binascii, threading, logging
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from nacl.utils import random as nacl_random

from .storage import LocalStorage

NONCE_SIZE = 12
KEY_SIZE = 32

log = logging.getLogger("supportdesk.security")

# -------- JSON --------
def canonical_dumps(obj) -> bytes:
    # Deterministic JSON, same bytes for equal payloads
    return json.dumps(obj, separators=(',', ':'), sort_keys=True).encode()

def key_name(user_id: str) -> str:
    return f"chat_key_{user_id}"

class KeyMaterialError(ValueError):
    pass

# -------- Per-user key --------
class KeyManager:
    """
    One AES-256 key per user id, kept base64 in local storage.
    - created on first use, never sent anywhere
    - replaced only when the stored material is unusable
    - creation is serialized so concurrent first callers share one key
    """
    def __init__(self, storage: LocalStorage):
        self.storage = storage
        self._cache: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get_or_create_key(self, user_id: str) -> bytes:
        with self._lock:
            key = self._cache.get(user_id)
            if key is not None:
                return key
            stored = self.storage.get(key_name(user_id))
            key = None
            if stored:
                try:
                    key = self._import(stored)
                except KeyMaterialError as e:
                    # whatever it sealed is unreadable now; start over with a new key
                    log.warning("replacing unusable conversation key for user %s: %s", user_id, e)
            if key is None:
                key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
                self.storage.set(key_name(user_id), base64.b64encode(key).decode())
                log.info("created conversation key for user %s", user_id)
            self._cache[user_id] = key
            return key

    @staticmethod
    def _import(stored: str) -> bytes:
        try:
            raw = base64.b64decode(stored, validate=True)
        except (binascii.Error, ValueError) as e:
            raise KeyMaterialError("stored key is not base64") from e
        if len(raw) != KEY_SIZE:
            raise KeyMaterialError(f"stored key has {len(raw)} bytes, expected {KEY_SIZE}")
        return raw

# -------- Payload cipher --------
class ConversationCipher:
    """
    Authenticated encryption of JSON payloads.
    Blob format: base64(nonce(12) || AES-GCM ciphertext+tag).
    """
    def __init__(self, keys: KeyManager):
        self.keys = keys

    def encrypt(self, user_id: str, payload: Any) -> str:
        key = self.keys.get_or_create_key(user_id)
        nonce = nacl_random(NONCE_SIZE)
        ct = AESGCM(key).encrypt(nonce, canonical_dumps(payload), None)
        return base64.b64encode(nonce + ct).decode()

    def decrypt(self, user_id: str, blob: str) -> Optional[Any]:
        # Any failure means "no data": the cache is convenience only
        try:
            raw = base64.b64decode(blob, validate=True)
            if len(raw) <= NONCE_SIZE:
                return None
            key = self.keys.get_or_create_key(user_id)
            plain = AESGCM(key).decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
            return json.loads(plain.decode("utf-8"))
        except (InvalidTag, binascii.Error, ValueError, TypeError) as e:
            log.debug("conversation blob rejected for user %s: %r", user_id, e)
            return None

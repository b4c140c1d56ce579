# medsafe/crypto.py
# AES-GCM helpers and on-disk key handling for the encrypted store.
import os, uuid, logging
from pathlib import Path
from threading import RLock
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from . import config

logger = logging.getLogger("medsafe.crypto")

CRYPTO_LOCK = RLock()
NONCE_SIZE = 12
KEY_SIZE = 32


def atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_suffix(path.suffix + f".tmp.{uuid.uuid4().hex}")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    tmp.write_bytes(data)
    tmp.replace(path)


def aes_encrypt(data: bytes, key: bytes) -> bytes:
    aes = AESGCM(key)
    nonce = os.urandom(NONCE_SIZE)
    return nonce + aes.encrypt(nonce, data, None)


def aes_decrypt(data: bytes, key: bytes) -> bytes:
    if not data or len(data) < NONCE_SIZE:
        raise InvalidTag("ciphertext too short")
    aes = AESGCM(key)
    nonce, ct = data[:NONCE_SIZE], data[NONCE_SIZE:]
    return aes.decrypt(nonce, ct, None)


def load_key(key_path: Optional[Path] = None) -> Optional[bytes]:
    key_path = key_path or config.KEY_PATH
    if not key_path.exists():
        return None
    d = key_path.read_bytes()
    return d[:KEY_SIZE] if len(d) >= KEY_SIZE else None


def get_or_create_key(key_path: Optional[Path] = None) -> bytes:
    key_path = key_path or config.KEY_PATH
    with CRYPTO_LOCK:
        k = load_key(key_path)
        if k:
            return k
        key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
        atomic_write_bytes(key_path, key)
        logger.info("key stored: %s", key_path)
        return key

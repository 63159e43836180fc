import base64
import binascii
import secrets
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from courier.core.errors import CryptoError

# --- Parameters ---
PREFIX = "enc:"
VERSION = "v1"
KDF_ITERS = 600_000
KEY_LEN = 32
SALT_LEN = 16
IV_LEN = 12


def derive_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA512(), length=KEY_LEN, salt=salt, iterations=KDF_ITERS)
    return kdf.derive(passphrase.encode("utf-8"))


def new_master_key() -> bytes:
    return secrets.token_bytes(KEY_LEN)


def is_encrypted(value: object) -> bool:
    return isinstance(value, str) and value.startswith(PREFIX)


def _check_key(key: bytes) -> bytes:
    if not isinstance(key, bytes) or len(key) != KEY_LEN:
        raise CryptoError("invalid master key length")
    return key


def encrypt_value(plaintext: str, key: bytes) -> str:
    """Encrypt one string with the workspace master key: enc:v1|<iv>|<ciphertext+tag>."""
    iv = secrets.token_bytes(IV_LEN)
    ct = AESGCM(_check_key(key)).encrypt(iv, plaintext.encode("utf-8"), None)
    payload = "|".join(
        [
            VERSION,
            base64.b64encode(iv).decode("ascii"),
            base64.b64encode(ct).decode("ascii"),
        ]
    )
    return PREFIX + payload


def _parse_encrypted(value: str) -> Tuple[bytes, bytes]:
    if not is_encrypted(value):
        raise CryptoError("not encrypted")
    parts = value[len(PREFIX):].split("|")
    if len(parts) != 3:
        raise CryptoError("invalid payload format")
    version, iv_b64, ct_b64 = parts
    if version != VERSION:
        raise CryptoError("unsupported version")
    try:
        iv = base64.b64decode(iv_b64, validate=True)
        ct = base64.b64decode(ct_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CryptoError("invalid payload encoding") from exc
    if len(iv) != IV_LEN:
        raise CryptoError("invalid iv length")
    return iv, ct


def decrypt_value(encrypted: str, key: bytes) -> str:
    iv, ct = _parse_encrypted(encrypted)
    try:
        pt = AESGCM(_check_key(key)).decrypt(iv, ct, None)
    except InvalidTag as exc:
        raise CryptoError("decryption failed") from exc
    return pt.decode("utf-8")


def seal_master_key(master: bytes, passphrase: str) -> str:
    """Wrap the master key with a passphrase-derived key (vault file payload)."""
    salt = secrets.token_bytes(SALT_LEN)
    iv = secrets.token_bytes(IV_LEN)
    ct = AESGCM(derive_key(passphrase, salt)).encrypt(iv, _check_key(master), None)
    return base64.b64encode(salt + iv + ct).decode("ascii")


def open_master_key(sealed: str, passphrase: str) -> bytes:
    try:
        blob = base64.b64decode(sealed, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CryptoError("invalid vault encoding") from exc
    salt, iv, ct = blob[:SALT_LEN], blob[SALT_LEN:SALT_LEN + IV_LEN], blob[SALT_LEN + IV_LEN:]
    try:
        return AESGCM(derive_key(passphrase, salt)).decrypt(iv, ct, None)
    except InvalidTag as exc:
        raise CryptoError("wrong passphrase") from exc

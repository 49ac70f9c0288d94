from __future__ import annotations

import base64
import binascii
import hashlib
import secrets
from typing import Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from intentiq.core.constants import MODULE_NAME
from intentiq.core.errors import DecodeError

# Obfuscation only: the passphrase ships with the client, so anyone holding
# the package can decrypt a cached blob.
PASSPHRASE = MODULE_NAME

_SALTED = b"Salted__"
_KEY_LEN = 32
_IV_LEN = 16
_SALT_LEN = 8


def _evp_bytes_to_key(passphrase: bytes, salt: bytes) -> Tuple[bytes, bytes]:
    """
    OpenSSL EVP_BytesToKey (MD5, one round). Matches what `openssl enc -md md5`
    and CryptoJS passphrase mode produce, so blobs written by the browser
    build stay readable here.
    """
    out = b""
    block = b""
    while len(out) < _KEY_LEN + _IV_LEN:
        block = hashlib.md5(block + passphrase + salt).digest()  # noqa: S324
        out += block
    return out[:_KEY_LEN], out[_KEY_LEN : _KEY_LEN + _IV_LEN]


def encrypt_data(plain_text: str, passphrase: str = PASSPHRASE) -> str:
    """Encrypt UTF-8 text; returns base64 of ``Salted__ | salt | AES-256-CBC ciphertext``."""
    salt = secrets.token_bytes(_SALT_LEN)
    key, iv = _evp_bytes_to_key(passphrase.encode("utf-8"), salt)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plain_text.encode("utf-8")) + padder.finalize()
    enc = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ct = enc.update(padded) + enc.finalize()
    return base64.b64encode(_SALTED + salt + ct).decode("ascii")


def decrypt_data(encrypted_text: str, passphrase: str = PASSPHRASE) -> str:
    """Reverse of :func:`encrypt_data`. Raises DecodeError on foreign or damaged input."""
    try:
        raw = base64.b64decode(encrypted_text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
        raise DecodeError("Ciphertext is not base64.", reason=str(e)) from e
    if not raw.startswith(_SALTED) or len(raw) < len(_SALTED) + _SALT_LEN + _IV_LEN:
        raise DecodeError("Ciphertext header missing.")
    ct = raw[len(_SALTED) + _SALT_LEN :]
    if len(ct) % _IV_LEN:
        raise DecodeError("Ciphertext length is not a block multiple.")
    salt = raw[len(_SALTED) : len(_SALTED) + _SALT_LEN]
    key, iv = _evp_bytes_to_key(passphrase.encode("utf-8"), salt)
    dec = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = dec.update(ct) + dec.finalize()
    try:
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        pt = unpadder.update(padded) + unpadder.finalize()
        return pt.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise DecodeError("Ciphertext does not decrypt with this passphrase.") from e

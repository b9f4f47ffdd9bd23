"""Feishu event decryption and signature verification.

Encrypted events carry ``{"encrypt": base64(iv || ciphertext)}``. The key
is SHA-256 of the app's encrypt key; the cipher is AES-256-CBC with
PKCS#7 padding.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from cnchannels.errors import DecryptionError

_BLOCK_BITS = 128


def _derive_key(encrypt_key: str) -> bytes:
    return hashlib.sha256(encrypt_key.encode()).digest()


def decrypt_event(encrypted: str, encrypt_key: str) -> str:
    """Return the UTF-8 plaintext of an encrypted event payload."""
    try:
        buf = base64.b64decode(encrypted, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("encrypted payload is not valid base64") from exc
    if len(buf) < 32 or len(buf) % 16:
        raise DecryptionError("encrypted payload has an invalid length")

    iv, ciphertext = buf[:16], buf[16:]
    decryptor = Cipher(algorithms.AES(_derive_key(encrypt_key)), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
    try:
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as exc:
        raise DecryptionError("event could not be decrypted with this key") from exc


def encrypt_event(plaintext: str, encrypt_key: str, iv: bytes | None = None) -> str:
    """Inverse of ``decrypt_event``; used for fixtures and local tooling."""
    iv = iv or os.urandom(16)
    padder = padding.PKCS7(_BLOCK_BITS).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_derive_key(encrypt_key)), modes.CBC(iv)).encryptor()
    return base64.b64encode(iv + encryptor.update(padded) + encryptor.finalize()).decode()


def compute_signature(timestamp: str, nonce: str, encrypt_key: str, body: str) -> str:
    content = timestamp + nonce + encrypt_key + body
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def verify_signature(
    timestamp: str,
    nonce: str,
    encrypt_key: str,
    body: str,
    signature: str,
) -> bool:
    """sha256(timestamp + nonce + encrypt_key + body), compared in constant time."""
    if not signature:
        return False
    expected = compute_signature(timestamp, nonce, encrypt_key, body)
    return hmac.compare_digest(expected.encode(), signature.encode())

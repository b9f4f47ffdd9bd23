"""WeCom callback message crypto.

The 43-character EncodingAESKey decodes (after appending "=") to a
32-byte AES-256 key whose first 16 bytes double as the CBC IV. The
plaintext is framed as ``random(16) | len(4, big-endian) | msg | corpId``
and padded PKCS#7-style to a 32-byte block. Signatures are SHA-1 over
the sorted ``[token, timestamp, nonce, payload]`` strings.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import struct

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from cnchannels.errors import CorpIdMismatchError, DecryptionError

ENCODING_AES_KEY_LENGTH = 43
_PAD_BLOCK = 32
_RANDOM_PREFIX = 16
_HEADER = _RANDOM_PREFIX + 4


def generate_signature(token: str, timestamp: str, nonce: str, payload: str) -> str:
    joined = "".join(sorted([token, timestamp, nonce, payload]))
    return hashlib.sha1(joined.encode("utf-8")).hexdigest()


def _signature_matches(expected: str, signature: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(expected.encode(), signature.encode())


def verify_signature(token: str, timestamp: str, nonce: str, echostr: str, signature: str) -> bool:
    """Signature check for the GET URL-verification handshake."""
    return _signature_matches(generate_signature(token, timestamp, nonce, echostr), signature)


def verify_msg_signature(token: str, timestamp: str, nonce: str, encrypted_msg: str, signature: str) -> bool:
    """Signature check for an encrypted POST callback."""
    return _signature_matches(generate_signature(token, timestamp, nonce, encrypted_msg), signature)


def decode_aes_key(encoding_aes_key: str) -> bytes:
    if len(encoding_aes_key) != ENCODING_AES_KEY_LENGTH:
        raise DecryptionError(
            f"encodingAesKey must be {ENCODING_AES_KEY_LENGTH} characters, got {len(encoding_aes_key)}"
        )
    try:
        key = base64.b64decode(encoding_aes_key + "=", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("encodingAesKey is not valid base64") from exc
    if len(key) != 32:
        raise DecryptionError("encodingAesKey does not decode to a 32-byte key")
    return key


def _cipher(key: bytes) -> Cipher:
    return Cipher(algorithms.AES(key), modes.CBC(key[:16]))


def _pad(data: bytes) -> bytes:
    pad_len = _PAD_BLOCK - (len(data) % _PAD_BLOCK)
    return data + bytes([pad_len]) * pad_len


def _unpad(data: bytes) -> bytes:
    pad_len = data[-1]
    if pad_len < 1 or pad_len > _PAD_BLOCK:
        raise DecryptionError(f"invalid padding length {pad_len}")
    return data[:-pad_len]


def decrypt_message(encrypted_msg: str, encoding_aes_key: str, corp_id: str) -> str:
    """Return the inner message; raises when the trailing corpId differs."""
    key = decode_aes_key(encoding_aes_key)
    try:
        ciphertext = base64.b64decode(encrypted_msg, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("encrypted message is not valid base64") from exc
    if not ciphertext or len(ciphertext) % 16:
        raise DecryptionError("encrypted message has an invalid length")

    decryptor = _cipher(key).decryptor()
    plaintext = _unpad(decryptor.update(ciphertext) + decryptor.finalize())
    if len(plaintext) < _HEADER:
        raise DecryptionError("decrypted message is truncated")

    (msg_len,) = struct.unpack(">I", plaintext[_RANDOM_PREFIX:_HEADER])
    if _HEADER + msg_len > len(plaintext):
        raise DecryptionError("decrypted message length exceeds payload")
    try:
        message = plaintext[_HEADER:_HEADER + msg_len].decode("utf-8")
        extracted_corp_id = plaintext[_HEADER + msg_len:].decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("decrypted message is not UTF-8") from exc

    if extracted_corp_id != corp_id:
        raise CorpIdMismatchError(corp_id, extracted_corp_id)
    return message


def encrypt_message(msg: str, encoding_aes_key: str, corp_id: str, random_prefix: bytes | None = None) -> str:
    """Frame, pad and encrypt a reply (or a test fixture) for ``corp_id``."""
    key = decode_aes_key(encoding_aes_key)
    body = msg.encode("utf-8")
    framed = (random_prefix or os.urandom(_RANDOM_PREFIX)) + struct.pack(">I", len(body)) + body + corp_id.encode()
    encryptor = _cipher(key).encryptor()
    return base64.b64encode(encryptor.update(_pad(framed)) + encryptor.finalize()).decode()

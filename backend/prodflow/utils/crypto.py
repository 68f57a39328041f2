"""At-rest protection for MercadoLibre OAuth tokens.

Tokens stored in ``meli_credentials`` are wrapped with AES-GCM under a key
derived (HKDF-SHA256) from ``settings.SECRET_KEY``. Stored values look like::

    ENC:v1:<base64(nonce || ciphertext || tag)>

Rows written before encryption was introduced hold the raw token; ``decrypt``
hands those back unchanged so no backfill is required.
"""

from __future__ import annotations

import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from prodflow.config import settings
from prodflow.utils.logger import logger


PREFIX = "ENC:v1:"
NONCE_BYTES = 12
KEY_BYTES = 32


def _derive_key() -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=None,
        info=b"prodflow-meli-token",
    ).derive(settings.SECRET_KEY.encode("utf-8"))


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(PREFIX)


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    if plaintext is None:
        return None
    nonce = os.urandom(NONCE_BYTES)
    sealed = AESGCM(_derive_key()).encrypt(nonce, str(plaintext).encode("utf-8"), None)
    return PREFIX + base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(value: Optional[str]) -> Optional[str]:
    """Return the plaintext for an ``ENC:v1:`` blob; other values pass through.

    A blob that fails authentication (wrong SECRET_KEY, truncated row) is
    logged and returned as ``None`` so callers treat the credential as missing
    and go through the refresh path instead of sending garbage to the API.
    """

    if not is_encrypted(value):
        return value

    try:
        raw = base64.b64decode(value[len(PREFIX):].encode("ascii"), validate=True)
    except ValueError:
        logger.error("Stored token blob is not valid base64; treating it as missing")
        return None
    if len(raw) <= NONCE_BYTES:
        logger.error("Stored token blob is truncated; treating it as missing")
        return None
    try:
        plain = AESGCM(_derive_key()).decrypt(raw[:NONCE_BYTES], raw[NONCE_BYTES:], None)
    except InvalidTag:
        logger.error("Stored token failed authentication; check SECRET_KEY")
        return None
    return plain.decode("utf-8")

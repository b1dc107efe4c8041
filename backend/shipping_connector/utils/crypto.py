"""At-rest protection for the secret fields of a carrier credential bag.

Secret values are stored as ``ENC:v1:<base64(nonce || ciphertext)>`` using
AES-GCM under a key derived (HKDF-SHA256) from ``settings.secret_key``.
Values without the prefix are treated as plaintext, so rows saved before
encryption was turned on still load and get sealed on their next write.
"""

import base64
import os
from functools import lru_cache
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from shipping_connector.config import settings
from shipping_connector.utils.logger import logger

SECRET_FIELDS = ("client_secret", "api_secret", "access_token", "refresh_token", "password")

_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12


@lru_cache(maxsize=4)
def _cipher(secret: str) -> AESGCM:
    key = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"carrier-credential-encryption",
    ).derive(secret.encode("utf-8"))
    return AESGCM(key)


def is_encrypted(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX)


def encrypt(value: Any) -> Optional[str]:
    if value is None or is_encrypted(value):
        return value
    nonce = os.urandom(_NONCE_SIZE)
    sealed = _cipher(settings.secret_key).encrypt(nonce, str(value).encode("utf-8"), None)
    return _PREFIX + base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(value: Any) -> Any:
    """Open an ``ENC:v1:`` value; anything else is returned as is.

    A value that fails to open is logged and returned unchanged so one bad
    field does not hide the rest of the configuration.
    """
    if not is_encrypted(value):
        return value
    try:
        raw = base64.b64decode(value[len(_PREFIX):])
        opened = _cipher(settings.secret_key).decrypt(raw[:_NONCE_SIZE], raw[_NONCE_SIZE:], None)
    except (InvalidTag, ValueError) as e:
        logger.error(f"Credential decryption failed: {type(e).__name__}")
        return value
    return opened.decode("utf-8")


def seal_credentials(credentials: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``credentials`` with every secret field encrypted."""
    sealed = dict(credentials)
    for key in SECRET_FIELDS:
        if sealed.get(key) is not None:
            sealed[key] = encrypt(sealed[key])
    return sealed


def open_credentials(credentials: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``credentials`` with every secret field in plaintext."""
    opened = dict(credentials)
    for key in SECRET_FIELDS:
        if opened.get(key) is not None:
            opened[key] = decrypt(opened[key])
    return opened

"""Channel credentials vault.

OTA credentials (webhook secrets, API keys, iCal URLs with embedded tokens)
are stored as one AES-256-GCM encrypted JSON document per channel.

Security:
- Key from CHANNEL_CREDENTIALS_KEY (32 bytes, hex)
- Random 96-bit nonce per encryption, stored in front of the ciphertext
- Plaintext never logged; API responses only ever see mask_credentials()
"""

from __future__ import annotations

import base64
import json
import os
from typing import Any

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_NONCE_SIZE = 12
_MASK_VISIBLE = 4


def _get_encryption_key() -> bytes:
    """Get AES-256 key for channel credentials.

    Raises:
        RuntimeError: If CHANNEL_CREDENTIALS_KEY is missing or not 32 bytes.
    """
    key_hex = os.environ.get("CHANNEL_CREDENTIALS_KEY")
    if not key_hex:
        raise RuntimeError(
            "CHANNEL_CREDENTIALS_KEY not configured. "
            "Generate with: openssl rand -hex 32"
        )
    key = bytes.fromhex(key_hex)
    if len(key) != 32:
        raise RuntimeError("CHANNEL_CREDENTIALS_KEY must be 32 bytes hex (64 hex chars).")
    return key


def encrypt_credentials(credentials: dict[str, Any]) -> str:
    """Encrypt a credentials dict to base64(nonce + ciphertext)."""
    aesgcm = AESGCM(_get_encryption_key())
    nonce = os.urandom(_NONCE_SIZE)
    plaintext = json.dumps(credentials, sort_keys=True).encode()
    return base64.b64encode(nonce + aesgcm.encrypt(nonce, plaintext, None)).decode()


def decrypt_credentials(encrypted: str | None) -> dict[str, Any]:
    """Inverse of encrypt_credentials; an empty column yields {}.

    Raises:
        cryptography.exceptions.InvalidTag: Wrong key or tampered data.
    """
    if not encrypted:
        return {}
    data = base64.b64decode(encrypted)
    aesgcm = AESGCM(_get_encryption_key())
    plaintext = aesgcm.decrypt(data[:_NONCE_SIZE], data[_NONCE_SIZE:], None)
    return json.loads(plaintext)


def mask_credentials(credentials: dict[str, Any]) -> dict[str, str]:
    """Keep the last few characters of each value, star the rest."""
    masked: dict[str, str] = {}
    for key, value in credentials.items():
        text = str(value)
        if len(text) <= _MASK_VISIBLE:
            masked[key] = "*" * len(text)
        else:
            masked[key] = "*" * (len(text) - _MASK_VISIBLE) + text[-_MASK_VISIBLE:]
    return masked

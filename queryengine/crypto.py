"""
Encryption utilities for parameter values.

Definitions may ask for a parameter to be encrypted before it reaches the
backend (the ``encrypt`` transform). Values are serialized to JSON and
sealed with Fernet from the cryptography library:
- AES-128-CBC encryption
- HMAC-SHA256 authentication
- Base64 encoding for storage

KEY MANAGEMENT:
---------------
- The key comes from ``Settings.secret_key`` (QUERY_ENGINE_SECRET_KEY)
- A valid Fernet key is used as-is; any other string is stretched with
  SHA-256 into one, so a passphrase also works
- Without a key a deterministic development key is used and a
  RuntimeWarning is emitted

Never log decrypted values.
"""

import base64
import hashlib
import json
import warnings
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from queryengine.core.config import settings

SENSITIVE_KEYS = {"password", "secret", "token", "key", "credential", "auth", "api_key"}
MASK = "********"


# =============================================================================
# KEY MANAGEMENT
# =============================================================================

def _derive_key(secret: str) -> bytes:
    try:
        Fernet(secret.encode())
        return secret.encode()
    except ValueError:
        return base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())


def _get_or_generate_key(secret_key: Optional[str] = None) -> bytes:
    secret = secret_key or settings.secret_key
    if secret:
        return _derive_key(secret)

    warnings.warn(
        "QUERY_ENGINE_SECRET_KEY not set! Using development fallback key. "
        "This is NOT secure for production.",
        RuntimeWarning
    )
    seed = b"queryengine-dev-key-do-not-use-in-production"
    return base64.urlsafe_b64encode(hashlib.sha256(seed).digest())


class ValueCipher:
    """Fernet wrapper bound to one key."""

    def __init__(self, secret_key: Optional[str] = None):
        self._fernet = Fernet(_get_or_generate_key(secret_key))

    def encrypt(self, value: Any) -> str:
        payload = json.dumps(value, default=str).encode("utf-8")
        return self._fernet.encrypt(payload).decode("utf-8")

    def decrypt(self, token: str) -> Any:
        try:
            decrypted = self._fernet.decrypt(token.encode("utf-8"))
        except InvalidToken:
            raise ValueError(
                "Failed to decrypt value. This may indicate a wrong key, "
                "corrupted data, or a key rotated without re-encrypting."
            )
        return json.loads(decrypted.decode("utf-8"))


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def generate_key() -> str:
    """
    Generate a new Fernet key for QUERY_ENGINE_SECRET_KEY.

        python -c "from queryengine.crypto import generate_key; print(generate_key())"
    """
    return Fernet.generate_key().decode("utf-8")


def mask_sensitive(values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a copy with sensitive values masked, for logs and metrics.

    A key is sensitive when it contains password, secret, token, key,
    credential or auth (case-insensitive). Nested dicts are masked too.
    """
    if not values:
        return {}

    masked = {}
    for k, v in values.items():
        if any(s in str(k).lower() for s in SENSITIVE_KEYS):
            masked[k] = MASK
        elif isinstance(v, dict):
            masked[k] = mask_sensitive(v)
        else:
            masked[k] = v
    return masked

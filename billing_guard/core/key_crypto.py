"""
Provider API Key Encryption
===========================

AES-256-GCM encryption for bring-your-own provider API keys with HKDF key
derivation. The ciphertext is bound to its project via AAD and stored as a
single base64 token (nonce || ciphertext || tag). Decryption falls back to
the previous SECRET_KEY during rotation.
"""

from __future__ import annotations

import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

_NONCE_BYTES = 12


def _derive_encryption_key(secret_key: str, key_version: int = 1) -> bytes:
    """Derive a 256-bit encryption key from SECRET_KEY using HKDF."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=f"billing-guard-provider-keys-v{key_version}".encode(),
        info=b"provider-api-key-encryption",
    )
    return hkdf.derive(secret_key.encode())


def encrypt_api_key(plaintext_key: str, secret_key: str, project_id: str) -> str:
    """Encrypt an API key for one project. Returns a base64 token."""
    aesgcm = AESGCM(_derive_encryption_key(secret_key))
    nonce = os.urandom(_NONCE_BYTES)
    ct_with_tag = aesgcm.encrypt(nonce, plaintext_key.encode(), project_id.encode())
    return base64.urlsafe_b64encode(nonce + ct_with_tag).decode()


def decrypt_api_key(token: str, secret_key: str, project_id: str) -> str:
    """Decrypt a token produced by encrypt_api_key for the same project."""
    raw = base64.urlsafe_b64decode(token.encode())
    nonce, ct_with_tag = raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]
    aesgcm = AESGCM(_derive_encryption_key(secret_key))
    return aesgcm.decrypt(nonce, ct_with_tag, project_id.encode()).decode()


def decrypt_with_fallback(
    token: str,
    current_secret: str,
    previous_secret: Optional[str],
    project_id: str,
) -> str:
    """Try current SECRET_KEY first, fall back to previous."""
    try:
        return decrypt_api_key(token, current_secret, project_id)
    except InvalidTag:
        if previous_secret:
            return decrypt_api_key(token, previous_secret, project_id)
        raise

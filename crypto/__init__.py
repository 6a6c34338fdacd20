"""
Cryptographic module for end-to-end encrypted chat.

Implements:
- P-256 ECDH key agreement with per-login key rotation
- AES-256-GCM authenticated encryption of message payloads
"""

from .primitives import (
    generate_keypair,
    derive_shared_secret,
    encrypt_message,
    decrypt_message,
    serialize_public_key,
    deserialize_public_key,
    CryptoError,
    KeyAgreementError,
    DecryptionFailure
)
from .session import (
    LoginSession,
    KeyExchangeSession,
    HandshakeState,
    SessionNotReady
)

__all__ = [
    'generate_keypair',
    'derive_shared_secret',
    'encrypt_message',
    'decrypt_message',
    'serialize_public_key',
    'deserialize_public_key',
    'CryptoError',
    'KeyAgreementError',
    'DecryptionFailure',
    'LoginSession',
    'KeyExchangeSession',
    'HandshakeState',
    'SessionNotReady'
]

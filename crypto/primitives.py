"""
Cryptographic Primitives for End-to-End Encryption

This module provides the operations used by both chat endpoints:
P-256 key agreement and AES-256-GCM authenticated encryption. The relay
never sees anything but the ciphertext and nonce produced here.
"""

import os
import base64
import binascii
from dataclasses import dataclass
from typing import Tuple, Union
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
CURVE = ec.SECP256R1


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class KeyAgreementError(CryptoError):
    """Peer public key is malformed or on an incompatible curve"""
    pass


@dataclass(frozen=True)
class DecryptionFailure:
    """
    Returned (never raised) when a payload does not authenticate.

    A wrong or stale shared secret, a bit-flip in transit and a truncated
    payload all end up here.
    """
    reason: str

    def __bool__(self) -> bool:
        return False


def generate_keypair() -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    """
    Generate a fresh P-256 keypair for key agreement.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = ec.generate_private_key(CURVE())
    public_key = private_key.public_key()
    return private_key, public_key


def derive_shared_secret(private_key: ec.EllipticCurvePrivateKey,
                         public_key: Union[ec.EllipticCurvePublicKey, str, bytes]) -> bytes:
    """
    Perform ECDH and return the raw 32-byte shared secret.

    The secret is used as an AES-256-GCM key as-is, which keeps it
    compatible with WebCrypto clients deriving ECDH -> AES-GCM-256.

    Args:
        private_key: Our private key
        public_key: Their public key, as a key object or exported form

    Returns:
        32-byte shared secret

    Raises:
        KeyAgreementError: If the peer key is unusable
    """
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        public_key = deserialize_public_key(public_key)

    if not isinstance(public_key.curve, type(private_key.curve)):
        raise KeyAgreementError(
            f"Incompatible curve: expected {private_key.curve.name}, got {public_key.curve.name}"
        )

    try:
        return private_key.exchange(ec.ECDH(), public_key)
    except ValueError as e:
        raise KeyAgreementError(f"Key agreement failed: {e}") from e


def encrypt_message(key: bytes, plaintext: bytes, associated_data: bytes = None) -> Tuple[bytes, bytes]:
    """
    Encrypt a message using AES-256-GCM.

    A new random nonce is drawn for every call.

    Args:
        key: 32-byte shared secret
        plaintext: Message to encrypt
        associated_data: Additional authenticated data

    Returns:
        Tuple of (ciphertext + 16-byte tag, 12-byte nonce)
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, plaintext, associated_data)
    return ciphertext, nonce


def decrypt_message(key: bytes, ciphertext: bytes, nonce: bytes,
                    associated_data: bytes = None) -> Union[bytes, DecryptionFailure]:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte shared secret
        ciphertext: Encrypted message + tag
        nonce: Nonce returned by encrypt_message
        associated_data: Additional authenticated data

    Returns:
        Decrypted plaintext, or DecryptionFailure if the tag check fails
    """
    if len(nonce) != NONCE_SIZE:
        return DecryptionFailure("Invalid nonce length")
    if len(ciphertext) < TAG_SIZE:
        return DecryptionFailure("Ciphertext too short")

    try:
        aesgcm = AESGCM(key)
    except ValueError as e:
        return DecryptionFailure(f"Invalid key: {e}")

    try:
        return aesgcm.decrypt(nonce, ciphertext, associated_data)
    except InvalidTag:
        return DecryptionFailure("Authentication tag mismatch")


def serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> str:
    """Export a public key as base64 DER SubjectPublicKeyInfo"""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return b64encode(der)


def deserialize_public_key(key_data: Union[str, bytes]) -> ec.EllipticCurvePublicKey:
    """
    Import a peer public key from base64 (or raw) DER SubjectPublicKeyInfo.

    Raises:
        KeyAgreementError: If the data is not an EC public key
    """
    try:
        der = b64decode(key_data) if isinstance(key_data, str) else key_data
        public_key = serialization.load_der_public_key(der)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyAgreementError(f"Malformed public key: {e}") from e

    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise KeyAgreementError("Public key is not an elliptic-curve key")
    return public_key


def b64encode(data: bytes) -> str:
    """Standard base64, as used on the wire"""
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """
    Strict base64 decode.

    Raises:
        ValueError: If the input is not valid base64
    """
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64: {e}") from e

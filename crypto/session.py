"""
Per-login key material and per-peer key exchange.

A LoginSession owns the keypair generated at login. Its private half never
leaves the object and is dropped on close(). A KeyExchangeSession binds a
LoginSession to one conversation partner: it fetches the partner's current
public key from a key directory, derives the shared secret and uses it to
encrypt and decrypt message payloads.

Every login rotates the keypair, so a partner who logged in again makes the
cached secret stale. That shows up as DecryptionFailure on their new
messages and is repaired by calling handshake() again.
"""

import asyncio
import enum
import logging
from typing import Dict, Optional, Protocol, Tuple, Union
from cryptography.hazmat.primitives.asymmetric import ec

from .primitives import (
    CryptoError,
    KeyAgreementError,
    DecryptionFailure,
    generate_keypair,
    derive_shared_secret,
    encrypt_message,
    decrypt_message,
    serialize_public_key,
    b64encode,
    b64decode,
)


logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TIMEOUT = 10.0


class SessionNotReady(CryptoError):
    """No shared secret has been established yet"""
    pass


class HandshakeState(str, enum.Enum):
    PENDING = "pending"
    SECURE = "secure"
    FAILED = "failed"


class KeyDirectory(Protocol):
    """Lookup of an identity's currently published public key."""

    async def fetch_public_key(self, identity_id: str) -> Optional[str]:
        ...


class LoginSession:
    """
    Key context for one login.

    Created with a fresh keypair; the public half is what gets published
    with the register/login request.
    """

    def __init__(self, identity_id: Optional[str] = None):
        self.identity_id = identity_id
        self._private_key: Optional[ec.EllipticCurvePrivateKey]
        self._private_key, self._public_key = generate_keypair()
        self.public_key_b64 = serialize_public_key(self._public_key)

    @property
    def is_open(self) -> bool:
        return self._private_key is not None

    def derive(self, peer_public_key: Union[str, bytes, ec.EllipticCurvePublicKey]) -> bytes:
        """
        Derive the shared secret with a peer.

        Raises:
            SessionNotReady: If the session was closed
            KeyAgreementError: If the peer key is unusable
        """
        if self._private_key is None:
            raise SessionNotReady("No session private key")
        return derive_shared_secret(self._private_key, peer_public_key)

    def close(self):
        """Forget the private key. Secrets already derived are unaffected."""
        self._private_key = None

    def __repr__(self) -> str:
        return f"<LoginSession identity={self.identity_id!r} open={self.is_open}>"


class KeyExchangeSession:
    """
    Shared-secret state for one (local identity, peer identity) pair.

    States: PENDING -> SECURE | FAILED. handshake() may be called again from
    any state; the newest call wins and older in-flight calls are discarded.
    """

    def __init__(self, login: LoginSession, peer_id: str, directory: KeyDirectory,
                 handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT):
        self.login = login
        self.peer_id = peer_id
        self.directory = directory
        self.handshake_timeout = handshake_timeout

        self.state = HandshakeState.PENDING
        self.error: Optional[str] = None
        self.generation = 0
        self._secret: Optional[bytes] = None
        self._attempt = 0
        self._plaintexts: Dict[str, str] = {}

    @property
    def is_secure(self) -> bool:
        return self.state == HandshakeState.SECURE

    @property
    def has_secret(self) -> bool:
        return self._secret is not None

    async def handshake(self) -> HandshakeState:
        """
        Fetch the peer's public key and derive a new shared secret.

        Returns:
            The resulting state. A superseded attempt returns the state
            left by the newer attempt.
        """
        self._attempt += 1
        attempt = self._attempt
        self.state = HandshakeState.PENDING
        self.error = None

        try:
            peer_key = await asyncio.wait_for(
                self.directory.fetch_public_key(self.peer_id),
                timeout=self.handshake_timeout
            )
            if attempt != self._attempt:
                return self.state
            if not peer_key:
                raise KeyAgreementError(f"No public key published for {self.peer_id}")
            secret = self.login.derive(peer_key)
        except asyncio.TimeoutError:
            return self._fail(attempt, "Public key fetch timed out")
        except CryptoError as e:
            return self._fail(attempt, str(e))
        except Exception as e:
            # Directory transport errors (HTTP, DB) are handshake failures too
            logger.debug("Key directory error", exc_info=True)
            return self._fail(attempt, f"Public key fetch failed: {e}")

        if attempt != self._attempt:
            return self.state

        self._secret = secret
        self.generation += 1
        self._plaintexts.clear()
        self.state = HandshakeState.SECURE
        logger.debug("Session with %s secured (generation %d)", self.peer_id, self.generation)
        return self.state

    def _fail(self, attempt: int, reason: str) -> HandshakeState:
        if attempt != self._attempt:
            return self.state
        self.state = HandshakeState.FAILED
        self.error = reason
        logger.warning("Handshake with %s failed: %s", self.peer_id, reason)
        return self.state

    def encrypt(self, text: str) -> Tuple[str, str]:
        """
        Encrypt text for the peer.

        Returns:
            Tuple of (base64 ciphertext, base64 nonce)

        Raises:
            SessionNotReady: If no secret has been derived
        """
        if self._secret is None:
            raise SessionNotReady(f"No shared secret with {self.peer_id}")
        ciphertext, nonce = encrypt_message(self._secret, text.encode("utf-8"))
        return b64encode(ciphertext), b64encode(nonce)

    def decrypt(self, content: str, iv: str, message_id: Optional[str] = None) -> Union[str, DecryptionFailure]:
        """
        Decrypt a payload from the conversation.

        Results for a message_id are cached until the next handshake. A
        failure marks the session FAILED so the caller can offer a repair,
        but the current secret is kept for sending.
        """
        if message_id is not None and message_id in self._plaintexts:
            return self._plaintexts[message_id]

        if self._secret is None:
            return DecryptionFailure("No shared secret")

        try:
            ciphertext = b64decode(content)
            nonce = b64decode(iv)
        except ValueError as e:
            return self._decrypt_failed(DecryptionFailure(str(e)))

        result = decrypt_message(self._secret, ciphertext, nonce)
        if isinstance(result, DecryptionFailure):
            return self._decrypt_failed(result)

        try:
            text = result.decode("utf-8")
        except UnicodeDecodeError:
            return self._decrypt_failed(DecryptionFailure("Plaintext is not valid UTF-8"))

        if message_id is not None:
            self._plaintexts[message_id] = text
        return text

    def _decrypt_failed(self, failure: DecryptionFailure) -> DecryptionFailure:
        if self.state == HandshakeState.SECURE:
            self.state = HandshakeState.FAILED
            self.error = failure.reason
            logger.info("Decryption from %s failed, re-handshake needed: %s", self.peer_id, failure.reason)
        return failure

    def __repr__(self) -> str:
        return f"<KeyExchangeSession peer={self.peer_id!r} state={self.state.value}>"

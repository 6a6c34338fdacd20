"""
Message routing: persist an encrypted message, push it to the recipient if
they are online, and acknowledge the sender with the stored record.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .database import Database
from .expiry import TTLSelection, compute_expiry, utcnow
from .presence import PresenceRegistry


logger = logging.getLogger(__name__)


class MessageRouter:
    """
    Relays already-encrypted messages between identities.

    Connection handles are anything with an async send_json(dict) method.
    There is no retry: an offline recipient gets the message from history.
    """

    def __init__(self, db: Database, presence: PresenceRegistry,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.presence = presence
        self.clock = clock

    async def send(self, sender_id: str, receiver_id: str, content: str, iv: str,
                   ttl=None, ack_to: Optional[Any] = None) -> dict:
        """
        Route one message.

        Args:
            sender_id: Sending identity
            receiver_id: Receiving identity
            content: Base64 ciphertext + tag
            iv: Base64 nonce
            ttl: TTLSelection or its wire form
            ack_to: Sender connection to acknowledge on

        Returns:
            The persisted message record

        Raises:
            ValueError: If a required field is missing
            PersistenceError: If the message could not be stored; nothing
                is pushed or acknowledged in that case
        """
        for name, value in (("senderId", sender_id), ("receiverId", receiver_id),
                            ("content", content), ("iv", iv)):
            if not isinstance(value, str) or not value:
                raise ValueError(f"Missing or invalid field: {name}")

        now = self.clock()
        selection = ttl if isinstance(ttl, TTLSelection) else TTLSelection.parse(ttl)
        expires_at = compute_expiry(selection, now)

        message = await self.db.create_message(
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            iv=iv,
            created_at=now,
            expires_at=expires_at
        )
        record = message.to_dict()

        target = self.presence.lookup(receiver_id)
        if target is not None:
            await self._push(target, {"type": "new_message", "message": record}, receiver_id)
        else:
            logger.debug("Recipient %s offline; message %s stored only", receiver_id, record["id"])

        if ack_to is not None:
            await self._push(ack_to, {"type": "message_sent", "message": record}, sender_id)

        return record

    async def _push(self, connection: Any, payload: dict, identity_id: str) -> bool:
        try:
            await connection.send_json(payload)
            return True
        except Exception as e:
            # Connection went away between lookup and push: a delivery miss
            logger.info("Push of %s to %s failed: %s", payload["type"], identity_id, e)
            return False

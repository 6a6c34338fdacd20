"""
Database models and operations for the relay server.

Uses SQLAlchemy with SQLite for user accounts (including each user's current
public key) and encrypted message records. The server only ever stores
ciphertext and nonces; it holds no key that could open them.
"""

import uuid
import logging
from datetime import datetime
from typing import Optional, List
from sqlalchemy import Column, String, DateTime, Text, select, delete, or_, and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from passlib.context import CryptContext

from .expiry import utcnow


logger = logging.getLogger(__name__)

Base = declarative_base()
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _new_id() -> str:
    return str(uuid.uuid4())


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds") + "Z"


class PersistenceError(Exception):
    """The message store could not complete an operation"""
    pass


class User(Base):
    """User account model"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    username = Column(String(50), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=False)  # P-256 SPKI (base64), replaced on every login
    created_at = Column(DateTime, default=utcnow)
    last_seen = Column(DateTime, default=utcnow)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "publicKey": self.public_key,
            "lastSeen": _isoformat(self.last_seen),
        }


class Message(Base):
    """Encrypted message record"""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_new_id)
    sender_id = Column(String(36), index=True, nullable=False)
    receiver_id = Column(String(36), index=True, nullable=False)
    content = Column(Text, nullable=False)  # base64 ciphertext + tag
    iv = Column(String(64), nullable=False)  # base64 nonce
    created_at = Column(DateTime, default=utcnow, index=True)
    expires_at = Column(DateTime, nullable=True, index=True)

    def to_dict(self) -> dict:
        """Wire representation shared by push, ack and history"""
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "content": self.content,
            "iv": self.iv,
            "createdAt": _isoformat(self.created_at),
            "expiresAt": _isoformat(self.expires_at),
        }


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./zerotrace.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    async def create_user(self, username: str, password: str, public_key: str) -> Optional[User]:
        """
        Create a new user account.

        Args:
            username: Unique username
            password: Plain text password (will be hashed)
            public_key: Public key of the registering session

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(
                username=username,
                hashed_password=User.hash_password(password),
                public_key=public_key
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        """Get user by username"""
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        async with self.async_session() as session:
            return await session.get(User, user_id)

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user or not user.verify_password(password):
            return None
        return user

    async def rotate_public_key(self, user_id: str, public_key: Optional[str]) -> Optional[User]:
        """
        Publish the public key of a new login session.

        Every secret derived from the previous key stops working for this
        user's new messages. Without a new key the stored one is kept.

        Returns:
            Updated User object or None if the user does not exist
        """
        async with self.async_session() as session:
            user = await session.get(User, user_id)
            if not user:
                return None
            if public_key:
                user.public_key = public_key
            user.last_seen = utcnow()
            await session.commit()
            await session.refresh(user)
            return user

    async def get_public_key(self, user_id: str) -> Optional[str]:
        """Current public key for a user, or None if unknown"""
        async with self.async_session() as session:
            result = await session.execute(select(User.public_key).where(User.id == user_id))
            return result.scalar_one_or_none()

    async def touch_user(self, user_id: str):
        """Record activity for a user (no-op for unknown ids)"""
        async with self.async_session() as session:
            await session.execute(update(User).where(User.id == user_id).values(last_seen=utcnow()))
            await session.commit()

    async def list_users(self) -> List[dict]:
        """List all registered users with their current public keys"""
        async with self.async_session() as session:
            result = await session.execute(select(User).order_by(User.username))
            return [user.to_dict() for user in result.scalars().all()]

    async def create_message(self, sender_id: str, receiver_id: str, content: str, iv: str,
                             created_at: Optional[datetime] = None,
                             expires_at: Optional[datetime] = None) -> Message:
        """
        Persist an encrypted message.

        Raises:
            PersistenceError: If the record could not be written
        """
        message = Message(
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            iv=iv,
            created_at=created_at or utcnow(),
            expires_at=expires_at
        )
        try:
            async with self.async_session() as session:
                session.add(message)
                await session.commit()
                await session.refresh(message)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not store message: {e}") from e
        return message

    async def get_conversation(self, user_a: str, user_b: str) -> List[Message]:
        """
        All stored messages between two users, oldest first.

        Raises:
            PersistenceError: If the store could not be read
        """
        query = (
            select(Message)
            .where(or_(
                and_(Message.sender_id == user_a, Message.receiver_id == user_b),
                and_(Message.sender_id == user_b, Message.receiver_id == user_a),
            ))
            .order_by(Message.created_at.asc())
        )
        try:
            async with self.async_session() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load conversation: {e}") from e

    async def delete_expired_messages(self, now: Optional[datetime] = None) -> int:
        """
        Delete every message whose expiry is set and already passed.

        Returns:
            Number of deleted records
        """
        if now is None:
            now = utcnow()
        async with self.async_session() as session:
            result = await session.execute(
                delete(Message).where(
                    Message.expires_at.is_not(None),
                    Message.expires_at < now
                )
            )
            await session.commit()
            return result.rowcount or 0

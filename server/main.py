"""
FastAPI relay server for end-to-end encrypted chat.

This server:
- Handles registration/login and publishes each login's public key
- Serves public keys and encrypted message history over REST
- Relays encrypted messages over WebSocket and stores them until they expire
- Runs a background sweeper that deletes expired messages

It never sees plaintext or private keys.
"""

import json
import logging
from datetime import timedelta
from typing import Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from pydantic import BaseModel

from crypto.primitives import KeyAgreementError, deserialize_public_key
from .auth import create_access_token, verify_token, Token, UserOut
from .cleanup import CleanupSweeper
from .config import Settings, configure_logging
from .database import Database, PersistenceError, User
from .presence import PresenceRegistry
from .router import MessageRouter


logger = logging.getLogger(__name__)

SERVICE_NAME = "ZeroTrace Secure Node"


# Pydantic models for API
class UserRegister(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None
    publicKey: Optional[str] = None


class UserLogin(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None
    publicKey: Optional[str] = None


class PublicKeyOut(BaseModel):
    publicKey: str


def _check_public_key(public_key: str):
    try:
        deserialize_public_key(public_key)
    except KeyAgreementError:
        raise HTTPException(status_code=400, detail="Invalid public key")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the relay application and its services"""
    settings = settings or Settings()
    configure_logging(settings.log_level)

    db = Database(settings.database_url)
    presence = PresenceRegistry()
    router = MessageRouter(db, presence)
    sweeper = CleanupSweeper(db, interval=settings.sweep_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        await db.create_tables()
        logger.info("Database initialized")
        sweeper.start()
        yield
        await sweeper.stop()
        await db.close()
        logger.info("Server shutting down")

    app = FastAPI(
        title="Encrypted Chat Relay",
        description="End-to-end encrypted chat relay with expiring messages",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.db = db
    app.state.presence = presence
    app.state.router = router
    app.state.sweeper = sweeper

    def issue_token(user: User) -> Token:
        access_token = create_access_token(
            data={"sub": user.id},
            secret_key=settings.secret_key,
            expires_delta=timedelta(minutes=settings.token_expire_minutes)
        )
        return Token(
            token=access_token,
            user=UserOut(id=user.id, username=user.username, publicKey=user.public_key)
        )

    @app.get("/")
    async def health():
        return {"status": "online", "service": SERVICE_NAME}

    @app.post("/auth/register", response_model=Token)
    async def register(user_data: UserRegister):
        """
        Register a new user account.

        The client generates the login keypair and sends the public half.
        """
        if not user_data.username or not user_data.password or not user_data.publicKey:
            raise HTTPException(status_code=400, detail="Missing fields")
        _check_public_key(user_data.publicKey)

        user = await db.create_user(
            username=user_data.username,
            password=user_data.password,
            public_key=user_data.publicKey
        )
        if not user:
            raise HTTPException(status_code=400, detail="Username taken")

        return issue_token(user)

    @app.post("/auth/login", response_model=Token)
    async def login(user_data: UserLogin):
        """Authenticate a user, rotate their public key and return a JWT"""
        if not user_data.username or not user_data.password:
            raise HTTPException(status_code=401, detail="Invalid credentials")

        user = await db.authenticate_user(user_data.username, user_data.password)
        if not user:
            raise HTTPException(status_code=401, detail="Invalid credentials")

        if user_data.publicKey:
            _check_public_key(user_data.publicKey)
        user = await db.rotate_public_key(user.id, user_data.publicKey)

        return issue_token(user)

    @app.get("/auth/keys/{user_id}", response_model=PublicKeyOut)
    async def get_public_key(user_id: str):
        """Current public key of a user. Public, for key exchange."""
        public_key = await db.get_public_key(user_id)
        if public_key is None:
            raise HTTPException(status_code=404, detail="User not found")
        return PublicKeyOut(publicKey=public_key)

    @app.get("/auth/users")
    async def list_users():
        """List all registered users"""
        return await db.list_users()

    @app.get("/auth/users/online")
    async def list_online_users():
        """List identities with a live connection"""
        return {"users": presence.online_identities()}

    @app.get("/auth/messages")
    async def get_messages(currentUserId: Optional[str] = None, targetUserId: Optional[str] = None):
        """Encrypted history between two users, oldest first"""
        if not currentUserId or not targetUserId:
            raise HTTPException(status_code=400, detail="Missing User IDs")
        try:
            messages = await db.get_conversation(currentUserId, targetUserId)
        except PersistenceError:
            logger.exception("History fetch failed")
            raise HTTPException(status_code=500, detail="Error fetching messages")
        return [message.to_dict() for message in messages]

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for real-time messaging.

        Protocol:
        1. Client sends: {"type": "join", "userId": "...", "token": "..."}
        2. Client sends: {"type": "private_message", "senderId", "receiverId", "content", "iv", "ttl"}
        3. Server pushes to recipient: {"type": "new_message", "message": {...}}
        4. Server acknowledges sender: {"type": "message_sent", "message": {...}}
        """
        await websocket.accept()

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    await handle_frame(websocket, raw)
                except WebSocketDisconnect:
                    raise
                except Exception:
                    # One bad frame must not drop the connection or its presence
                    logger.exception("Error handling WebSocket frame")
                    await websocket.send_json({"type": "error", "message": "Internal error"})

        except WebSocketDisconnect:
            pass
        finally:
            for user_id in presence.unregister(websocket):
                logger.info("User %s disconnected", user_id)

    async def handle_frame(websocket: WebSocket, raw: str):
        try:
            data = json.loads(raw)
        except ValueError:
            data = None
        if not isinstance(data, dict):
            await websocket.send_json({"type": "error", "message": "Invalid frame"})
            return

        event = data.get("type")

        if event == "join":
            await handle_join(websocket, data)

        elif event == "private_message":
            try:
                await router.send(
                    sender_id=data.get("senderId"),
                    receiver_id=data.get("receiverId"),
                    content=data.get("content"),
                    iv=data.get("iv"),
                    ttl=data.get("ttl"),
                    ack_to=websocket
                )
            except ValueError as e:
                await websocket.send_json({"type": "error", "message": str(e)})
            except PersistenceError:
                logger.exception("Message routing failed")
                await websocket.send_json({
                    "type": "error",
                    "message": "Message could not be stored"
                })

        elif event == "ping":
            await websocket.send_json({"type": "pong"})

        else:
            await websocket.send_json({
                "type": "error",
                "message": f"Unknown event: {event}"
            })

    async def handle_join(websocket: WebSocket, data: dict):
        user_id = data.get("userId")
        if not isinstance(user_id, str) or not user_id:
            await websocket.send_json({"type": "error", "message": "Missing userId"})
            return

        if settings.require_join_token:
            if verify_token(data.get("token"), settings.secret_key) != user_id:
                await websocket.send_json({"type": "error", "message": "Invalid token"})
                return

        presence.register(user_id, websocket)
        logger.info("User %s joined", user_id)
        try:
            await db.touch_user(user_id)
        except Exception:
            logger.warning("Could not update last_seen for %s", user_id, exc_info=True)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    _settings = app.state.settings
    uvicorn.run(app, host=_settings.host, port=_settings.port)

#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- User registration and login (a fresh keypair every time)
- Key exchange with a conversation partner
- Encrypted messaging with optional self-destruct timers
- Repairing a conversation after the partner rotated keys
"""

import asyncio
import json
import sys
import getpass
import logging
from typing import Optional, Dict, List
from datetime import datetime, timezone
import websockets
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from crypto.primitives import DecryptionFailure
from crypto.session import LoginSession, KeyExchangeSession, HandshakeState, SessionNotReady
from client.api import RelayApi, ApiError


logger = logging.getLogger(__name__)

TTL_CHOICES = ("never", "1m", "1h", "24h")

HELP_TEXT = """Commands:
  /chat <username> - Start chat with user
  /exit - Exit current chat
  /ttl <never|1m|1h|24h|N> - Self-destruct timer for new messages (N = minutes)
  /repair - Redo the key exchange with the current chat partner
  /users - List all users
  /online - List online users
  /quit - Quit application"""


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def is_expired(message: dict, now: Optional[datetime] = None) -> bool:
    """Whether a record's expiry has passed (display filter only)"""
    expires_at = parse_timestamp(message.get("expiresAt"))
    if expires_at is None:
        return False
    return expires_at <= (now or datetime.now(timezone.utc))


def visible_messages(messages: List[dict], now: Optional[datetime] = None) -> List[dict]:
    return [msg for msg in messages if not is_expired(msg, now)]


def normalize_ttl(value: str) -> Optional[str]:
    """Wire TTL for a /ttl argument, or None if unusable"""
    value = value.strip().lower()
    if value in TTL_CHOICES:
        return value
    digits = value[:-1] if value.endswith("m") else value
    if digits.isdigit() and int(digits) > 0:
        return f"{int(digits)}m"
    return None


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, server_url: str = "http://localhost:3000"):
        """
        Initialize chat client.

        Args:
            server_url: Base URL of the relay server
        """
        self.server_url = server_url
        self.ws_url = server_url.replace("http", "ws", 1) + "/ws"
        self.api = RelayApi(server_url)
        self.user: Optional[dict] = None
        self.token: Optional[str] = None
        self.login_session: Optional[LoginSession] = None
        self.session: Optional[KeyExchangeSession] = None
        self.peer: Optional[dict] = None
        self.messages: List[dict] = []
        self.ttl = "never"
        self.users: Dict[str, dict] = {}
        self.websocket = None
        self.running = False

    @property
    def user_id(self) -> Optional[str]:
        return self.user["id"] if self.user else None

    async def register(self, username: str, password: str) -> bool:
        """
        Register a new user account.

        Returns:
            True if successful
        """
        login_session = LoginSession()
        try:
            data = await self.api.register(username, password, login_session.public_key_b64)
        except ApiError as e:
            print(f"Registration failed: {e.detail}")
            return False
        except Exception as e:
            print(f"Registration error: {e}")
            return False

        self._start_login(data, login_session)
        print(f"Registration successful! Welcome, {username}")
        return True

    async def login(self, username: str, password: str) -> bool:
        """
        Login with existing account, publishing a new public key.

        Partners holding a secret derived from the old key must re-handshake.

        Returns:
            True if successful
        """
        login_session = LoginSession()
        try:
            data = await self.api.login(username, password, login_session.public_key_b64)
        except ApiError as e:
            print(f"Login failed: {e.detail}")
            return False
        except Exception as e:
            print(f"Login error: {e}")
            return False

        self._start_login(data, login_session)
        print(f"Login successful! Welcome back, {username}")
        return True

    def _start_login(self, data: dict, login_session: LoginSession):
        if self.login_session is not None:
            self.login_session.close()
        self.token = data["token"]
        self.user = data["user"]
        login_session.identity_id = self.user["id"]
        self.login_session = login_session

    async def connect_websocket(self) -> bool:
        """Connect to the relay and register presence"""
        try:
            self.websocket = await websockets.connect(self.ws_url)
            await self.websocket.send(json.dumps({
                "type": "join",
                "userId": self.user_id,
                "token": self.token
            }))
            print("Connected to server")
            return True
        except Exception as e:
            print(f"WebSocket connection error: {e}")
            return False

    async def _find_user(self, username: str) -> Optional[dict]:
        if username not in self.users:
            for user in await self.api.list_users():
                self.users[user["username"]] = user
        return self.users.get(username)

    async def start_chat(self, peer_username: str):
        """
        Open a conversation. Any previous session is abandoned.

        Args:
            peer_username: Username to chat with
        """
        try:
            peer = await self._find_user(peer_username)
        except Exception as e:
            print(f"Failed to look up {peer_username}: {e}")
            return
        if not peer:
            print(f"Unknown user: {peer_username}")
            return

        self.peer = peer
        self.messages = []
        self.session = KeyExchangeSession(self.login_session, peer["id"], self.api)
        await self._handshake()

        try:
            self.messages = await self.api.fetch_history(self.user_id, peer["id"])
        except Exception as e:
            print(f"History fetch error: {e}")

        history = visible_messages(self.messages)
        if history:
            print("\n--- Message History ---")
            for msg in history:
                print(self.render(msg))
            print("--- End History ---\n")

        print(f"Chatting with {peer_username}. Type '/exit' to leave chat, '/help' for commands.")

    async def _handshake(self):
        state = await self.session.handshake()
        if state == HandshakeState.SECURE:
            print(f"Secure session with {self.peer['username']} established")
        else:
            print(f"Key exchange with {self.peer['username']} failed: {self.session.error}. Use /repair to retry.")

    async def repair(self):
        """Re-run the key exchange and re-render the conversation"""
        if not self.session:
            print("No active chat.")
            return
        await self._handshake()
        if self.session.is_secure:
            for msg in visible_messages(self.messages):
                print(self.render(msg))

    def decrypt(self, msg: dict) -> str:
        """Plaintext for a record, or a placeholder if it cannot be opened"""
        result = self.session.decrypt(msg["content"], msg["iv"], message_id=msg["id"])
        if isinstance(result, DecryptionFailure):
            return "[undecryptable: keys changed, use /repair]"
        return result

    def render(self, msg: dict) -> str:
        prefix = "You" if msg["senderId"] == self.user_id else self.peer["username"]
        created = parse_timestamp(msg.get("createdAt"))
        timestamp = created.astimezone().strftime("%H:%M") if created else "--:--"
        suffix = " (auto-wipe)" if msg.get("expiresAt") else ""
        return f"[{timestamp}] {prefix}: {self.decrypt(msg)}{suffix}"

    async def send_message(self, text: str):
        """
        Encrypt and send a message to the current chat partner.
        """
        if not self.session:
            print("No active chat. Use /chat <username> to start.")
            return

        try:
            content, iv = self.session.encrypt(text)
        except SessionNotReady:
            print("No secure session yet. Use /repair to retry the key exchange.")
            return

        try:
            await self.websocket.send(json.dumps({
                "type": "private_message",
                "senderId": self.user_id,
                "receiverId": self.peer["id"],
                "content": content,
                "iv": iv,
                "ttl": self.ttl
            }))
        except Exception as e:
            print(f"Failed to send message: {e}")

    async def receive_messages(self):
        """Background task to receive messages"""
        try:
            while self.running:
                raw = await self.websocket.recv()
                data = json.loads(raw)
                event = data.get("type")

                if event in ("new_message", "message_sent"):
                    self._handle_incoming_message(data["message"])
                elif event == "error":
                    print(f"\n[Error: {data.get('message')}]")
                else:
                    logger.debug("Ignoring event %s", event)

        except websockets.exceptions.ConnectionClosed:
            print("\nConnection closed")
            self.running = False
        except Exception as e:
            print(f"\nReceive error: {e}")
            self.running = False

    def _handle_incoming_message(self, msg: dict):
        """Display a pushed or acknowledged record if it belongs to the open chat"""
        if not self.peer or not self.session:
            if msg["receiverId"] == self.user_id:
                print("\n[New encrypted message received]")
            return

        participants = {msg["senderId"], msg["receiverId"]}
        if participants != {self.user_id, self.peer["id"]} and participants != {self.user_id}:
            print("\n[New encrypted message from another conversation]")
            return

        self.messages.append(msg)
        print(f"\n{self.render(msg)}")

    async def list_users(self):
        """List all registered users"""
        try:
            users = await self.api.list_users()
        except Exception as e:
            print(f"Failed to list users: {e}")
            return
        print("Registered users:")
        for user in users:
            self.users[user["username"]] = user
            print(f"  - {user['username']}")

    async def list_online_users(self):
        """List currently online users"""
        try:
            online = set(await self.api.list_online_users())
            users = await self.api.list_users()
        except Exception as e:
            print(f"Failed to list online users: {e}")
            return
        print("Online users:")
        for user in users:
            if user["id"] in online and user["id"] != self.user_id:
                print(f"  - {user['username']}")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        receive_task = asyncio.create_task(self.receive_messages())
        session = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    if self.peer:
                        prompt_text = f"[{self.peer['username']}|{self.ttl}] > "
                    else:
                        prompt_text = "> "

                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    else:
                        await self.send_message(user_input)

                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            receive_task.cancel()
            if self.websocket:
                await self.websocket.close()
            await self.api.aclose()
            if self.login_session:
                self.login_session.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()

        if cmd == "/chat" and len(parts) == 2:
            await self.start_chat(parts[1].strip())
        elif cmd == "/exit":
            self.peer = None
            self.session = None
            self.messages = []
            print("Exited chat")
        elif cmd == "/ttl" and len(parts) == 2:
            ttl = normalize_ttl(parts[1])
            if ttl is None:
                print("TTL must be never, 1m, 1h, 24h or a positive number of minutes")
            else:
                self.ttl = ttl
                print(f"New messages will use TTL: {ttl}")
        elif cmd == "/repair":
            await self.repair()
        elif cmd == "/users":
            await self.list_users()
        elif cmd == "/online":
            await self.list_online_users()
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    server_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:3000"
    client = ChatClient(server_url)

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "1":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.register(username, password):
                break
        elif choice == "2":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.login(username, password):
                break
        elif choice == "3":
            await client.api.aclose()
            return
        else:
            print("Invalid choice")

    if await client.connect_websocket():
        await client.run_interactive()

    print("\nGoodbye!")


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)

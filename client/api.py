"""
HTTP client for the relay's REST surface.
"""

from typing import List, Optional
import httpx


class ApiError(Exception):
    """Non-success response from the relay"""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class RelayApi:
    """
    Thin async wrapper around the relay endpoints.

    Also serves as the key directory for KeyExchangeSession.
    """

    def __init__(self, server_url: str = "http://localhost:3000", http_client: Optional[httpx.AsyncClient] = None):
        self.server_url = server_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(base_url=self.server_url)

    async def _request(self, method: str, path: str, **kwargs):
        response = await self.http_client.request(method, path, **kwargs)
        if response.status_code != 200:
            try:
                detail = response.json().get("detail", "Unknown error")
            except ValueError:
                detail = response.text or "Unknown error"
            raise ApiError(response.status_code, detail)
        return response.json()

    async def register(self, username: str, password: str, public_key: str) -> dict:
        return await self._request("POST", "/auth/register", json={
            "username": username,
            "password": password,
            "publicKey": public_key
        })

    async def login(self, username: str, password: str, public_key: str) -> dict:
        return await self._request("POST", "/auth/login", json={
            "username": username,
            "password": password,
            "publicKey": public_key
        })

    async def fetch_public_key(self, identity_id: str) -> Optional[str]:
        """Current public key for an identity, None if it has none"""
        try:
            data = await self._request("GET", f"/auth/keys/{identity_id}")
        except ApiError as e:
            if e.status_code == 404:
                return None
            raise
        return data.get("publicKey")

    async def list_users(self) -> List[dict]:
        return await self._request("GET", "/auth/users")

    async def list_online_users(self) -> List[str]:
        data = await self._request("GET", "/auth/users/online")
        return data["users"]

    async def fetch_history(self, current_user_id: str, target_user_id: str) -> List[dict]:
        return await self._request("GET", "/auth/messages", params={
            "currentUserId": current_user_id,
            "targetUserId": target_user_id
        })

    async def aclose(self):
        await self.http_client.aclose()

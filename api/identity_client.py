# api/identity_client.py
import httpx
from loguru import logger
from typing import Dict, Optional


class IdentityClient:
    """
    Client for the identity-resolution service (fid -> display name).

    Lookups are best-effort: a timeout or error reads as "no name".
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            base_url: Service root, e.g. https://api.neynar.com/v2/farcaster
            api_key: Optional API key sent as ``x-api-key``
            timeout: Per-request bound in seconds
        """
        headers = {
            "User-Agent": "Prediction-Market-Indexer/1.0",
            "Accept": "application/json",
        }

        if api_key:
            headers["x-api-key"] = api_key

        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers=headers,
            follow_redirects=True
        )
        self._names: Dict[str, Optional[str]] = {}

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    async def get_display_name(self, fid) -> Optional[str]:
        if not fid:
            return None
        key = str(fid)
        if key in self._names:
            return self._names[key]

        try:
            response = await self.client.get(f"{self.base_url}/user/bulk", params={"fids": key})
            response.raise_for_status()
            users = response.json().get("users") or []
        except httpx.TimeoutException:
            logger.warning(f"Identity lookup for fid {key} timed out")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Identity lookup for fid {key} failed: {e}")
            return None

        name = None
        if users:
            name = users[0].get("display_name") or users[0].get("username")
        self._names[key] = name
        return name

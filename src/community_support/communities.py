"""
Community service client.

Community existence and ownership live in the community service; billing only
asks two questions of it, so the dependency is expressed as a small protocol
with an HTTP implementation.
"""

from typing import Any, Protocol

import httpx
import structlog

from community_support.billing.exceptions import CommunityServiceError

logger = structlog.get_logger(__name__)


class CommunityDirectory(Protocol):
    async def community_exists(self, community_id: int) -> bool: ...

    async def is_owner(self, user_id: int, community_id: int) -> bool: ...


class CommunityServiceClient:
    """HTTP client for the community service."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the community service client.

        Args:
            base_url: Community service URL (e.g., http://community:8001)
            token: Service-to-service bearer token
            timeout: Request timeout in seconds
            transport: Optional transport override, used by tests
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"

            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str) -> dict[str, Any] | None:
        """GET a resource, returning None on 404."""
        client = await self._get_client()
        try:
            response = await client.get(path)
        except httpx.TimeoutException as e:
            logger.error("community_service.timeout", path=path, error=str(e))
            raise CommunityServiceError(f"Community service timed out: {path}") from e
        except httpx.RequestError as e:
            logger.error("community_service.request_error", path=path, error=str(e))
            raise CommunityServiceError(f"Community service request failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.error(
                "community_service.error_response", path=path, status_code=response.status_code
            )
            raise CommunityServiceError(
                f"Community service returned {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    async def community_exists(self, community_id: int) -> bool:
        """An inactive community is treated as missing."""
        community = await self._get(f"/api/v1/communities/{community_id}")
        if community is None:
            return False
        return bool(community.get("is_active", True))

    async def is_owner(self, user_id: int, community_id: int) -> bool:
        member = await self._get(f"/api/v1/communities/{community_id}/members/{user_id}")
        if member is None:
            return False
        return member.get("role") == "owner"


__all__ = ["CommunityDirectory", "CommunityServiceClient"]

"""
GitHub Client

OAuth code exchange for identity linking, plus optional reads of pull
request metadata and reviews (used to seed state for PRs the relay first
learns about from a pasted link).
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from .errors import PermanentExternalError, TransientExternalError

logger = logging.getLogger("prrelay.common.github_client")


@dataclass
class GitHubIdentity:
    """The GitHub account an OAuth code was exchanged for"""
    login: str
    id: int


class GitHubClient:
    """
    Async GitHub client.

    Args:
        client_id: OAuth app client ID
        client_secret: OAuth app client secret
        api_token: Token for REST reads (optional)
    """

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        api_token: str = "",
        api_url: str = "https://api.github.com",
        oauth_url: str = "https://github.com/login/oauth",
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._api_token = api_token
        self._api_url = api_url.rstrip("/")
        self._oauth_url = oauth_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def can_read_api(self) -> bool:
        return bool(self._api_token)

    async def close(self) -> None:
        await self._client.aclose()

    def authorize_url(self, state_id: str, redirect_uri: str) -> str:
        """URL the user is redirected to for GitHub authorization"""
        query = urlencode({
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "scope": "read:user",
            "state": state_id,
        })
        return f"{self._oauth_url}/authorize?{query}"

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientExternalError(f"github {url} timed out") from e
        except httpx.TransportError as e:
            raise TransientExternalError(f"github {url} transport error: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientExternalError(f"github {url} returned HTTP {response.status_code}")
        if response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0":
            raise TransientExternalError(f"github {url} rate limited")
        if response.status_code >= 400:
            raise PermanentExternalError(
                f"github {url} returned HTTP {response.status_code}",
                code=f"http_{response.status_code}",
            )
        try:
            return response.json()
        except ValueError as e:
            raise TransientExternalError(f"github {url} returned invalid JSON") from e

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """
        Exchange an OAuth code for the authenticated user's profile.

        Returns:
            Raw ``GET /user`` response; shape checking is the caller's job
        """
        token_data = await self._request(
            "POST",
            f"{self._oauth_url}/access_token",
            data={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "code": code,
            },
            headers={"Accept": "application/json"},
        )
        access_token = token_data.get("access_token") if isinstance(token_data, dict) else None
        if not access_token:
            error = token_data.get("error", "no_token") if isinstance(token_data, dict) else "no_token"
            raise PermanentExternalError(f"github code exchange failed: {error}", code=error)

        return await self._request(
            "GET",
            f"{self._api_url}/user",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/vnd.github+json",
            },
        )

    def _api_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_token}",
            "Accept": "application/vnd.github+json",
        }

    async def get_pull_request(self, repo_full_name: str, number: int) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"{self._api_url}/repos/{repo_full_name}/pulls/{number}",
            headers=self._api_headers(),
        )

    async def list_reviews(self, repo_full_name: str, number: int) -> List[Dict[str, Any]]:
        reviews: List[Dict[str, Any]] = []
        page = 1
        while True:
            batch = await self._request(
                "GET",
                f"{self._api_url}/repos/{repo_full_name}/pulls/{number}/reviews",
                params={"per_page": 100, "page": page},
                headers=self._api_headers(),
            )
            if not isinstance(batch, list) or not batch:
                break
            reviews.extend(batch)
            if len(batch) < 100:
                break
            page += 1
        return reviews

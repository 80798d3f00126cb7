"""
Slack Web API Client

Narrow async client for the calls the relay makes: post a message, add and
remove reactions, resolve a channel. Every Slack failure is translated into
the relay error taxonomy here, so callers never inspect Slack error strings.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from .errors import AlreadySatisfiedError, PermanentExternalError, TransientExternalError

logger = logging.getLogger("prrelay.common.slack_client")

# Slack error codes meaning the requested state already holds
SATISFIED_ERRORS = frozenset({"already_reacted", "no_reaction"})

# Slack error codes worth retrying; everything else is permanent
TRANSIENT_ERRORS = frozenset({
    "ratelimited",
    "internal_error",
    "service_unavailable",
    "fatal_error",
    "request_timeout",
})

CHANNEL_ID_PATTERN = re.compile(r"^[CG][A-Z0-9]{6,}$")


class ChatClient(ABC):
    """Chat platform operations the pipeline depends on"""

    @abstractmethod
    async def post_message(self, channel: str, text: str) -> Dict[str, str]:
        """
        Post a message.

        Returns:
            {"channel": <channel id>, "ts": <message timestamp>}
        """

    @abstractmethod
    async def add_reaction(self, channel: str, ts: str, name: str) -> None:
        """Add a reaction; raises AlreadySatisfiedError if already present"""

    @abstractmethod
    async def remove_reaction(self, channel: str, ts: str, name: str) -> None:
        """Remove a reaction; raises AlreadySatisfiedError if absent"""

    @abstractmethod
    async def resolve_channel(self, channel: str) -> str:
        """Map ``#name``/``name``/ID to a channel ID"""

    async def post_ephemeral(self, channel: str, user: str, text: str) -> None:
        """Send a message only ``user`` can see. Optional for implementations."""

    async def close(self) -> None:
        """Release resources. Default is a no-op."""


class SlackClient(ChatClient):
    """
    httpx-based Slack Web API client.

    Usage:
        client = SlackClient(token="xoxb-...")
        ref = await client.post_message("C0123", "hello")
        await client.add_reaction(ref["channel"], ref["ts"], "tada")
        await client.close()
    """

    def __init__(
        self,
        token: str,
        api_url: str = "https://slack.com/api",
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, payload: Dict[str, Any], http_method: str = "POST") -> Dict[str, Any]:
        url = f"{self._api_url}/{method}"
        headers = {"Authorization": f"Bearer {self._token}"}
        try:
            if http_method == "GET":
                response = await self._client.get(url, params=payload, headers=headers)
            else:
                response = await self._client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientExternalError(f"slack {method} timed out") from e
        except httpx.TransportError as e:
            raise TransientExternalError(f"slack {method} transport error: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise TransientExternalError(
                f"slack {method} rate limited",
                retry_after=float(retry_after) if retry_after else None,
            )
        if response.status_code >= 500:
            raise TransientExternalError(f"slack {method} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise PermanentExternalError(
                f"slack {method} returned HTTP {response.status_code}",
                code=f"http_{response.status_code}",
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransientExternalError(f"slack {method} returned invalid JSON") from e

        if not data.get("ok"):
            raise classify_slack_error(method, data.get("error", "unknown_error"))
        return data

    async def post_message(self, channel: str, text: str) -> Dict[str, str]:
        data = await self._call("chat.postMessage", {
            "channel": channel,
            "text": text,
            "unfurl_links": False,
            "unfurl_media": False,
        })
        return {"channel": data.get("channel", channel), "ts": data["ts"]}

    async def post_ephemeral(self, channel: str, user: str, text: str) -> None:
        await self._call("chat.postEphemeral", {"channel": channel, "user": user, "text": text})

    async def add_reaction(self, channel: str, ts: str, name: str) -> None:
        await self._call("reactions.add", {"channel": channel, "timestamp": ts, "name": name})

    async def remove_reaction(self, channel: str, ts: str, name: str) -> None:
        await self._call("reactions.remove", {"channel": channel, "timestamp": ts, "name": name})

    async def resolve_channel(self, channel: str) -> str:
        name = channel.lstrip("#")
        if CHANNEL_ID_PATTERN.match(name):
            return name

        cursor = ""
        while True:
            params = {
                "exclude_archived": "true",
                "limit": "1000",
                "types": "public_channel,private_channel",
            }
            if cursor:
                params["cursor"] = cursor
            data = await self._call("conversations.list", params, http_method="GET")
            for item in data.get("channels", []):
                if item.get("name") == name:
                    return item["id"]
            cursor = (data.get("response_metadata") or {}).get("next_cursor", "")
            if not cursor:
                break

        raise PermanentExternalError(f"channel #{name} not found", code="channel_not_found")


def classify_slack_error(method: str, code: str) -> Exception:
    """Translate a Slack ``error`` code into the relay taxonomy"""
    message = f"slack {method} failed: {code}"
    if code in SATISFIED_ERRORS:
        return AlreadySatisfiedError(message, code=code)
    if code in TRANSIENT_ERRORS:
        return TransientExternalError(message)
    return PermanentExternalError(message, code=code)

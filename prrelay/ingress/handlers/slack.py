"""
Slack Handler

Handles Slack Events API and slash command requests.
"""

import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ...common.errors import AuthenticationError, ValidationError
from ...common.schemas import JobKind, ManualLinkPayload, WebhookJob
from .base import BaseHandler, hmac_sha256_hex, require_match

PR_URL_HINT = re.compile(r"https://github\.com/[^/\s]+/[^/\s]+/pull/\d+")


@dataclass
class SlashCommand:
    """A parsed slash command invocation"""
    command: str
    text: str
    team_id: str
    user_id: str
    channel_id: str

    @property
    def argument(self) -> str:
        return self.text.strip()


class SlackHandler(BaseHandler):
    """
    Handler for Slack Events API webhooks.

    Processes:
    - message events that contain a GitHub pull request URL

    Ignores:
    - Bot messages
    - Message subtypes (edits, joins, deletions, ...)
    - Messages without a PR link
    """

    def __init__(
        self,
        signing_secret: str = "",
        max_age: int = 300,
        max_attempts: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize Slack handler.

        Args:
            signing_secret: Slack signing secret for verification
            max_age: Oldest accepted request timestamp, in seconds
        """
        super().__init__("slack", max_attempts=max_attempts)
        self._signing_secret = signing_secret
        self._max_age = max_age
        self._clock = clock

    def verify_signature(self, body: bytes, signature: str, timestamp: str = "") -> None:
        """
        Verify Slack request signature.

        Args:
            body: Raw request body
            signature: X-Slack-Signature header
            timestamp: X-Slack-Request-Timestamp header
        """
        if not self._signing_secret:
            raise AuthenticationError("slack signing secret is not configured")
        if not signature or not timestamp:
            raise AuthenticationError("missing slack signature headers")

        try:
            ts = int(timestamp)
        except ValueError:
            raise AuthenticationError("malformed slack request timestamp")
        if abs(self._clock() - ts) > self._max_age:
            raise AuthenticationError("stale slack request timestamp")

        basestring = b"v0:" + timestamp.encode("utf-8") + b":" + body
        expected = "v0=" + hmac_sha256_hex(self._signing_secret, basestring)
        require_match(expected, signature, self.source_name)

    def is_url_verification(self, raw_data: Dict[str, Any]) -> bool:
        """Check if request is URL verification"""
        return raw_data.get("type") == "url_verification"

    def get_challenge(self, raw_data: Dict[str, Any]) -> Optional[str]:
        """Get challenge for URL verification"""
        if self.is_url_verification(raw_data):
            return raw_data.get("challenge")
        return None

    def parse_event(self, raw_data: Dict[str, Any], **metadata: Any) -> Optional[WebhookJob]:
        """
        Turn a message event that mentions a PR into a manual_link job.

        Returns:
            WebhookJob or None if the event should be ignored
        """
        if raw_data.get("type") != "event_callback":
            return None

        event = raw_data.get("event") or {}
        if event.get("type") != "message":
            return None

        # Skip bot messages (including our own announcements) and subtypes
        if event.get("bot_id") or event.get("subtype"):
            return None

        text = event.get("text") or ""
        if not PR_URL_HINT.search(text):
            return None

        payload = ManualLinkPayload(
            slack_team_id=raw_data.get("team_id") or event.get("team") or "",
            slack_channel=event.get("channel", ""),
            slack_message_ts=event.get("ts", ""),
            slack_user_id=event.get("user", ""),
            text=text,
        )
        if not payload.slack_channel or not payload.slack_message_ts:
            return None

        return WebhookJob(
            kind=JobKind.MANUAL_LINK,
            delivery_id=raw_data.get("event_id"),
            payload=payload.model_dump(mode="json"),
            max_attempts=self.max_attempts,
        )

    def parse_command(self, form: Dict[str, str]) -> SlashCommand:
        """
        Parse a slash command form body.

        Raises:
            ValidationError: If the command or caller is missing
        """
        command = (form.get("command") or "").strip()
        user_id = form.get("user_id") or ""
        if not command or not user_id:
            raise ValidationError("slash command is missing command or user_id")
        return SlashCommand(
            command=command,
            text=form.get("text") or "",
            team_id=form.get("team_id") or "",
            user_id=user_id,
            channel_id=form.get("channel_id") or "",
        )

"""
Identity Linker

Binds a Slack user to a GitHub identity through a one-time OAuth state
token, and manages the user's default delivery channel.

Lifecycle:
    unverified -> link_requested -> verified
    verified   -> unverified (unlink)
"""

import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional
from urllib.parse import urlencode

from ..common.errors import (
    IdentityMismatchError,
    InvalidStateError,
    PermanentExternalError,
    RelayError,
    TransientExternalError,
)
from ..common.github_client import GitHubClient, GitHubIdentity
from ..common.log_context import LogContext
from ..common.schemas import OAuthState, User, Verification, utcnow
from ..common.slack_client import ChatClient
from ..common.store import RelayStore

STATE_TTL = timedelta(minutes=15)
STATE_BYTES = 16

GITHUB_LOGIN_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})$")


@dataclass
class LinkStatus:
    """What ``/notify-status`` reports"""
    verification: Verification
    github_username: Optional[str] = None
    default_channel: Optional[str] = None

    def describe(self) -> str:
        if self.verification == Verification.VERIFIED:
            identity = f"linked to GitHub user `{self.github_username}`"
        elif self.verification == Verification.LINK_REQUESTED:
            identity = "link pending; finish the GitHub authorization to complete it"
        else:
            identity = "not linked to a GitHub account"
        channel = f"<#{self.default_channel}>" if self.default_channel else "not set"
        return f"Your Slack account is {identity}. Default channel: {channel}."


def parse_identity(profile: Any) -> GitHubIdentity:
    """
    Validate a GitHub ``/user`` response.

    Raises:
        IdentityMismatchError: If the login or numeric id is missing or malformed
    """
    if not isinstance(profile, dict):
        raise IdentityMismatchError("github profile is not an object")

    login = profile.get("login")
    user_id = profile.get("id")
    if not isinstance(login, str) or not GITHUB_LOGIN_PATTERN.match(login):
        raise IdentityMismatchError(f"github login is malformed: {login!r}")
    if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
        raise IdentityMismatchError(f"github user id is malformed: {user_id!r}")
    return GitHubIdentity(login=login, id=user_id)


class IdentityLinker:
    """
    Args:
        store: Typed document store
        github: GitHub client used for the code exchange
        chat: Chat client, for validating default channels and confirming links
        base_url: Public base URL of this service
    """

    def __init__(
        self,
        store: RelayStore,
        github: GitHubClient,
        chat: ChatClient,
        base_url: str,
        log: Optional[LogContext] = None,
    ):
        self._store = store
        self._github = github
        self._chat = chat
        self._base_url = base_url.rstrip("/")
        self._log = log or LogContext.for_module("prrelay.pipeline.identity_linker")

    @property
    def callback_url(self) -> str:
        return f"{self._base_url}/auth/github/callback"

    async def request_link(self, team_id: str, user_id: str, channel: Optional[str] = None) -> str:
        """
        Issue a fresh state token and return the URL that starts the flow.

        Any previously issued token for this user is invalidated.
        """
        user = await self._store.get_or_create_user(team_id, user_id)
        if user.pending_state_id:
            await self._store.delete_oauth_state(user.pending_state_id)

        now = utcnow()
        state = OAuthState(
            id=secrets.token_hex(STATE_BYTES),
            slack_team_id=team_id,
            slack_user_id=user_id,
            slack_channel=channel,
            created_at=now,
            expires_at=now + STATE_TTL,
        )
        await self._store.save_oauth_state(state)

        user.pending_state_id = state.id
        if user.verification != Verification.VERIFIED:
            user.verification = Verification.LINK_REQUESTED
        await self._store.save_user(user)

        self._log.info("Link requested", team=team_id, user=user_id)
        return f"{self._base_url}/auth/github/link?{urlencode({'state': state.id})}"

    async def authorize_url(self, state_id: str) -> str:
        """GitHub authorization URL for a still-valid state token"""
        await self._load_state(state_id)
        return self._github.authorize_url(state_id, self.callback_url)

    async def _load_state(self, state_id: str) -> OAuthState:
        if not state_id:
            raise InvalidStateError("state is missing")
        state = await self._store.get_oauth_state(state_id)
        if state is None:
            raise InvalidStateError("state is unknown or already used")
        if state.is_expired():
            await self._store.delete_oauth_state(state_id)
            raise InvalidStateError("state has expired")
        return state

    async def complete_link(self, state_id: str, code: str) -> User:
        """
        Consume a state token and bind the user to the GitHub account.

        Raises:
            InvalidStateError: Missing, unknown, expired, consumed or superseded token
            IdentityMismatchError: GitHub returned a malformed identity
        """
        state = await self._load_state(state_id)

        user = await self._store.get_user(state.slack_team_id, state.slack_user_id)
        if user is None or user.pending_state_id != state.id:
            await self._store.delete_oauth_state(state.id)
            raise InvalidStateError("state was superseded by a newer link request")

        # Single use: consumed before the exchange so a replay cannot race it
        await self._store.delete_oauth_state(state.id)
        user.pending_state_id = None
        prior = Verification.VERIFIED if user.is_verified else Verification.UNVERIFIED

        if not code:
            user.verification = prior
            await self._store.save_user(user)
            raise InvalidStateError("authorization code is missing")

        await self._store.save_user(user)
        try:
            identity = parse_identity(await self._github.exchange_code(code))
        except RelayError:
            user.verification = prior
            await self._store.save_user(user)
            raise

        user.github_username = identity.login
        user.github_user_id = identity.id
        user.verification = Verification.VERIFIED
        user.linked_at = utcnow()
        user.unlinked_at = None
        await self._store.save_user(user)

        self._log.info(
            "Identity linked",
            team=user.slack_team_id,
            user=user.slack_user_id,
            github_username=identity.login,
        )
        if state.slack_channel:
            await self._confirm(state, identity.login)
        return user

    async def _confirm(self, state: OAuthState, login: str) -> None:
        """Tell the user, in the channel they started from, that the link worked"""
        try:
            await self._chat.post_ephemeral(
                state.slack_channel,
                state.slack_user_id,
                f"Your Slack account is now linked to GitHub user `{login}`.",
            )
        except (TransientExternalError, PermanentExternalError) as e:
            self._log.warning(
                "Link confirmation not delivered",
                channel=state.slack_channel,
                user=state.slack_user_id,
                error=e,
            )

    async def unlink(self, team_id: str, user_id: str) -> User:
        user = await self._store.get_or_create_user(team_id, user_id)
        if user.pending_state_id:
            await self._store.delete_oauth_state(user.pending_state_id)

        user.github_username = None
        user.github_user_id = None
        user.pending_state_id = None
        user.verification = Verification.UNVERIFIED
        user.unlinked_at = utcnow()
        await self._store.save_user(user)

        self._log.info("Identity unlinked", team=team_id, user=user_id)
        return user

    async def set_default_channel(self, team_id: str, user_id: str, channel: str) -> User:
        """
        Store the user's default channel, resolved to a channel ID.

        Raises:
            PermanentExternalError: If the channel does not exist
        """
        channel_id = await self._chat.resolve_channel(channel)
        user = await self._store.get_or_create_user(team_id, user_id)
        user.default_channel = channel_id
        await self._store.save_user(user)

        self._log.info("Default channel set", team=team_id, user=user_id, channel=channel_id)
        return user

    async def status(self, team_id: str, user_id: str) -> LinkStatus:
        user = await self._store.get_user(team_id, user_id)
        if user is None:
            return LinkStatus(verification=Verification.UNVERIFIED)
        return LinkStatus(
            verification=user.verification,
            github_username=user.github_username,
            default_channel=user.default_channel,
        )

"""
Channel Resolver

Decides which Slack channel a pull request is announced in.

Priority (first match wins):
1. Channel annotation in the PR description
   (``@slack-channel: #name`` or ``!review: #name``)
2. The author's default channel, if their GitHub binding is verified
3. The repository's default channel
4. NoChannelConfiguredError
"""

import re
from dataclasses import dataclass
from typing import Optional

from ..common.errors import NoChannelConfiguredError
from ..common.schemas import PullRequestInfo, Repo, User

ANNOTATION_PATTERN = re.compile(r"@slack-channel:\s*#?([A-Za-z0-9_-]+)", re.IGNORECASE)
DIRECTIVE_PATTERN = re.compile(r"!reviews?:\s*(.+)", re.IGNORECASE)
SKIP_PATTERN = re.compile(r"!review-skip", re.IGNORECASE)
CHANNEL_NAME = re.compile(r"^[A-Za-z0-9_-]+$")
GITHUB_LOGIN = re.compile(r"^[A-Za-z0-9._-]+$")
EMOJI_DIRECTIVE = re.compile(r"^:([A-Za-z0-9_+-]+):$")


@dataclass
class PRDirectives:
    """Instructions embedded in a PR description"""
    channel: Optional[str] = None
    skip: bool = False
    cc: Optional[str] = None
    custom_emoji: Optional[str] = None


@dataclass
class Resolution:
    """Where to post, and why"""
    channel: str
    source: str  # "annotation", "user_default", "repo_default"


def parse_directives(description: Optional[str]) -> PRDirectives:
    """
    Parse channel, skip, cc and emoji directives from a PR description.

    Supports ``@slack-channel: #name`` and the directive form
    ``!review: [skip|no] [#channel] [@github-user] [:emoji:]``. The last
    directive wins for each component.
    """
    directives = PRDirectives()
    if not description:
        return directives

    text = SKIP_PATTERN.sub("!review: skip", description)

    # Collect (position, kind, value) so the last occurrence across both forms wins
    found = []
    for match in ANNOTATION_PATTERN.finditer(text):
        found.append((match.start(), "channel", match.group(1)))
    for match in DIRECTIVE_PATTERN.finditer(text):
        offset = match.start(1)
        for part in match.group(1).split():
            lowered = part.lower()
            if lowered in ("skip", "no"):
                found.append((offset, "skip", True))
            elif part.startswith("#") and CHANNEL_NAME.match(part[1:]):
                found.append((offset, "channel", part[1:]))
            elif part.startswith("@") and GITHUB_LOGIN.match(part[1:]):
                found.append((offset, "cc", part[1:]))
            elif EMOJI_DIRECTIVE.match(part):
                found.append((offset, "custom_emoji", part.strip(":")))
            offset += len(part) + 1

    for _, kind, value in sorted(found, key=lambda item: item[0]):
        setattr(directives, kind, value)
    return directives


def resolve_channel(
    pr: PullRequestInfo,
    repo: Optional[Repo],
    user: Optional[User],
    directives: Optional[PRDirectives] = None,
) -> Resolution:
    """
    Pick the destination channel for a pull request.

    Args:
        pr: The pull request
        repo: Repository configuration, if registered
        user: The author's binding, if any (ignored unless verified)
        directives: Pre-parsed directives (parsed from ``pr.body`` if omitted)

    Raises:
        NoChannelConfiguredError: If no rule yields a channel
    """
    if directives is None:
        directives = parse_directives(pr.body)

    if directives.channel:
        return Resolution(channel=directives.channel, source="annotation")

    if user is not None and user.is_verified and user.default_channel:
        return Resolution(channel=user.default_channel, source="user_default")

    if repo is not None and repo.default_channel:
        return Resolution(channel=repo.default_channel, source="repo_default")

    raise NoChannelConfiguredError(
        f"no channel configured for PR #{pr.number} by {pr.user.login}"
    )

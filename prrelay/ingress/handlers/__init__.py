"""
Source Handlers

Signature verification and payload-to-job conversion per webhook source.

Available Handlers:
- GitHubHandler: pull_request / pull_request_review webhooks
- SlackHandler: Events API message events and slash commands
"""

from .base import BaseHandler, hmac_sha256_hex
from .github import GitHubHandler
from .slack import SlackHandler, SlashCommand

__all__ = [
    "BaseHandler",
    "hmac_sha256_hex",
    "GitHubHandler",
    "SlackHandler",
    "SlashCommand",
]

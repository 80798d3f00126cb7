"""
PR Relay Schemas

Durable records (document store) and the async job envelope (task queue).
"""

from .models import (
    User,
    OAuthState,
    Repo,
    TrackedMessage,
    ReviewerState,
    PullRequestReviewLedger,
    Verification,
    ReviewState,
    ClosedState,
    MessageSource,
    user_key,
    pr_key,
    message_key,
    utcnow,
)
from .jobs import (
    WebhookJob,
    JobHandle,
    JobKind,
    GitHubEventType,
    PullRequestAction,
    ReviewAction,
    PullRequestEvent,
    PullRequestReviewEvent,
    GitHubUserRef,
    RepositoryRef,
    PullRequestInfo,
    ReviewInfo,
    ManualLinkPayload,
    SUPPORTED_GITHUB_EVENTS,
)

__all__ = [
    "User",
    "OAuthState",
    "Repo",
    "TrackedMessage",
    "ReviewerState",
    "PullRequestReviewLedger",
    "Verification",
    "ReviewState",
    "ClosedState",
    "MessageSource",
    "user_key",
    "pr_key",
    "message_key",
    "utcnow",
    "WebhookJob",
    "JobHandle",
    "JobKind",
    "GitHubEventType",
    "PullRequestAction",
    "ReviewAction",
    "PullRequestEvent",
    "PullRequestReviewEvent",
    "GitHubUserRef",
    "RepositoryRef",
    "PullRequestInfo",
    "ReviewInfo",
    "ManualLinkPayload",
    "SUPPORTED_GITHUB_EVENTS",
]

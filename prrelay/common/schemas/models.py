"""
Durable Record Schemas

Everything the document store owns: users, OAuth link states, repos,
tracked Slack messages and the per-PR review ledger.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class Verification(str, Enum):
    """Identity binding lifecycle"""
    UNVERIFIED = "unverified"
    LINK_REQUESTED = "link_requested"
    VERIFIED = "verified"


class ReviewState(str, Enum):
    """GitHub review states that carry a reaction"""
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    COMMENTED = "commented"


class ClosedState(str, Enum):
    """Terminal pull request states"""
    MERGED = "merged"
    CLOSED = "closed"


class MessageSource(str, Enum):
    """Who created the tracked Slack message"""
    BOT = "bot"
    MANUAL = "manual"


# ============================================================================
# Records
# ============================================================================

class User(BaseModel):
    """Slack user <-> GitHub identity binding"""
    slack_team_id: str
    slack_user_id: str
    github_username: Optional[str] = None
    github_user_id: Optional[int] = None
    default_channel: Optional[str] = None
    verification: Verification = Verification.UNVERIFIED
    pending_state_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    linked_at: Optional[datetime] = None
    unlinked_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return user_key(self.slack_team_id, self.slack_user_id)

    @property
    def is_verified(self) -> bool:
        return self.verification == Verification.VERIFIED and bool(self.github_username)


class OAuthState(BaseModel):
    """One-time, time-boxed token tying a GitHub OAuth callback to a Slack user"""
    id: str
    slack_team_id: str
    slack_user_id: str
    slack_channel: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class Repo(BaseModel):
    """Per-repository configuration"""
    full_name: str = Field(..., pattern=r"^[\w.-]+/[\w.-]+$")
    default_channel: Optional[str] = None
    webhook_secret: Optional[str] = None
    enabled: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TrackedMessage(BaseModel):
    """A Slack message whose reactions mirror one pull request"""
    id: str = Field(default_factory=lambda: uuid4().hex)
    repo_full_name: str
    pr_number: int = Field(..., gt=0)
    slack_channel: str
    slack_message_ts: str
    pr_url: str = ""
    author: Optional[str] = None
    source: MessageSource = MessageSource.BOT
    last_status: str = "opened"
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def natural_key(self) -> str:
        return message_key(self.repo_full_name, self.pr_number, self.slack_channel)


class ReviewerState(BaseModel):
    """Latest known review of one reviewer"""
    state: ReviewState
    submitted_at: datetime
    review_id: Optional[int] = None
    dismissed: bool = False


class PullRequestReviewLedger(BaseModel):
    """
    Aggregate review history for one pull request.

    Keeps the latest review per reviewer, including dismissal tombstones, so
    the displayed reaction set can be recomputed from scratch regardless of
    the order events were delivered in.
    """
    repo_full_name: str
    pr_number: int
    reviewers: Dict[str, ReviewerState] = Field(default_factory=dict)
    closed_state: Optional[ClosedState] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return pr_key(self.repo_full_name, self.pr_number)

    def record_review(
        self,
        reviewer: str,
        state: ReviewState,
        submitted_at: datetime,
        review_id: Optional[int] = None,
    ) -> bool:
        """
        Apply a submitted review if it is newer than what is stored.

        Returns:
            True if the ledger changed
        """
        current = self.reviewers.get(reviewer)
        if current is not None:
            if review_id is not None and current.review_id == review_id and current.dismissed:
                return False
            if current.submitted_at > submitted_at:
                return False
            if (
                current.submitted_at == submitted_at
                and current.state == state
                and current.review_id == review_id
            ):
                return False

        self.reviewers[reviewer] = ReviewerState(
            state=state, submitted_at=submitted_at, review_id=review_id
        )
        self.updated_at = utcnow()
        return True

    def dismiss_review(
        self,
        reviewer: str,
        state: ReviewState,
        submitted_at: datetime,
        review_id: Optional[int] = None,
    ) -> bool:
        """
        Remove a reviewer's contribution unless a newer review supersedes it.

        A dismissal that arrives before the review it dismisses leaves a
        tombstone, so the late review cannot bring the reaction back.
        """
        current = self.reviewers.get(reviewer)
        if current is not None:
            if current.submitted_at > submitted_at:
                return False
            if current.dismissed and current.submitted_at == submitted_at:
                return False

        self.reviewers[reviewer] = ReviewerState(
            state=state, submitted_at=submitted_at, review_id=review_id, dismissed=True
        )
        self.updated_at = utcnow()
        return True

    def active_states(self) -> Dict[str, ReviewState]:
        return {
            reviewer: entry.state
            for reviewer, entry in self.reviewers.items()
            if not entry.dismissed
        }

    def status_label(self) -> str:
        """Single label summarizing the PR, terminal state first"""
        if self.closed_state is not None:
            return self.closed_state.value
        states = set(self.active_states().values())
        for state in (ReviewState.CHANGES_REQUESTED, ReviewState.APPROVED, ReviewState.COMMENTED):
            if state in states:
                return state.value
        return "opened"


# ============================================================================
# Keys
# ============================================================================

def user_key(team_id: str, user_id: str) -> str:
    return f"{team_id}#{user_id}"


def pr_key(repo_full_name: str, pr_number: int) -> str:
    return f"{repo_full_name.lower()}#{pr_number}"


def message_key(repo_full_name: str, pr_number: int, channel: str) -> str:
    return f"{pr_key(repo_full_name, pr_number)}#{channel}"

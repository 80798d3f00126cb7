"""
Job Envelope and Event Payloads

The WebhookJob is the only thing that crosses the async boundary. Its payload
stays raw until the worker parses it into one of the typed events below.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from .models import utcnow


class JobKind(str, Enum):
    """Closed set of job kinds the worker knows how to process"""
    GITHUB_EVENT = "github_event"
    MANUAL_LINK = "manual_link"


class GitHubEventType(str, Enum):
    PULL_REQUEST = "pull_request"
    PULL_REQUEST_REVIEW = "pull_request_review"


class PullRequestAction(str, Enum):
    OPENED = "opened"
    READY_FOR_REVIEW = "ready_for_review"
    CLOSED = "closed"


class ReviewAction(str, Enum):
    SUBMITTED = "submitted"
    DISMISSED = "dismissed"


SUPPORTED_GITHUB_EVENTS = frozenset(e.value for e in GitHubEventType)


class WebhookJob(BaseModel):
    """Async job envelope"""
    id: str = Field(default_factory=lambda: uuid4().hex)
    kind: JobKind
    event_type: Optional[str] = None
    delivery_id: Optional[str] = None
    trace_id: str = Field(default_factory=lambda: uuid4().hex)
    payload: Dict[str, Any]
    enqueued_at: datetime = Field(default_factory=utcnow)
    max_attempts: int = Field(default=10, gt=0)


class JobHandle(BaseModel):
    """What the queue hands back after a successful enqueue"""
    job_id: str
    task_name: Optional[str] = None


# ============================================================================
# Parsed GitHub payloads
# ============================================================================

class GitHubUserRef(BaseModel):
    login: str
    id: Optional[int] = None


class RepositoryRef(BaseModel):
    full_name: str
    name: str = ""


class PullRequestInfo(BaseModel):
    number: int = Field(..., gt=0)
    title: str = ""
    body: Optional[str] = None
    html_url: str = ""
    draft: bool = False
    merged: bool = False
    state: str = "open"
    user: GitHubUserRef
    additions: int = 0
    deletions: int = 0


class ReviewInfo(BaseModel):
    id: Optional[int] = None
    state: str
    submitted_at: Optional[datetime] = None
    user: GitHubUserRef


class PullRequestEvent(BaseModel):
    """``pull_request`` webhook body"""
    action: str
    pull_request: PullRequestInfo
    repository: RepositoryRef


class PullRequestReviewEvent(BaseModel):
    """``pull_request_review`` webhook body"""
    action: str
    review: ReviewInfo
    pull_request: PullRequestInfo
    repository: RepositoryRef


class ManualLinkPayload(BaseModel):
    """A Slack message that mentioned one or more PR URLs"""
    slack_team_id: str
    slack_channel: str
    slack_message_ts: str
    slack_user_id: str
    text: str

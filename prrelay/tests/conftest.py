"""
Shared fakes and payload builders.

The fakes keep just enough state to assert on: which messages were posted
and which reactions are currently on each message.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from prrelay.common.errors import AlreadySatisfiedError, PermanentExternalError, QueueError
from prrelay.common.github_client import GitHubClient
from prrelay.common.log_context import LogContext
from prrelay.common.schemas import JobHandle, WebhookJob
from prrelay.common.slack_client import CHANNEL_ID_PATTERN, ChatClient
from prrelay.common.store import MemoryDocumentStore, RelayStore
from prrelay.common.task_queue import TaskQueue

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: int) -> str:
    """ISO timestamp ``minutes`` after BASE_TIME"""
    return (BASE_TIME + timedelta(minutes=minutes)).isoformat().replace("+00:00", "Z")


# ============================================================================
# Fakes
# ============================================================================

class FakeChatClient(ChatClient):
    """In-memory Slack: channels by name, reactions per message"""

    def __init__(self, channels: Optional[Dict[str, str]] = None):
        self.channels = channels if channels is not None else {
            "widgets-eng": "C0WIDGETS",
            "alice-prs": "C0ALICE1",
            "platform": "C0PLATFORM",
            "random": "C0RANDOM1",
        }
        self.posted: List[Tuple[str, str, str]] = []
        self.reactions: Dict[Tuple[str, str], Set[str]] = {}
        self.calls: List[Tuple[str, str, str, str]] = []
        self.failures: Dict[Tuple[str, str], List[Exception]] = {}
        self.ephemeral: List[Tuple[str, str, str]] = []
        self._ts = 0

    def fail_next(self, operation: str, name: str, error: Exception, times: int = 1) -> None:
        self.failures.setdefault((operation, name), []).extend([error] * times)

    def _maybe_fail(self, operation: str, name: str) -> None:
        pending = self.failures.get((operation, name))
        if pending:
            raise pending.pop(0)

    def reactions_on(self, channel: str, ts: str) -> Set[str]:
        return set(self.reactions.get((channel, ts), set()))

    async def post_message(self, channel: str, text: str) -> Dict[str, str]:
        self._maybe_fail("post", channel)
        self._ts += 1
        ts = f"1714564800.{self._ts:06d}"
        self.posted.append((channel, ts, text))
        self.reactions[(channel, ts)] = set()
        return {"channel": channel, "ts": ts}

    async def add_reaction(self, channel: str, ts: str, name: str) -> None:
        self.calls.append(("add", channel, ts, name))
        self._maybe_fail("add", name)
        current = self.reactions.setdefault((channel, ts), set())
        if name in current:
            raise AlreadySatisfiedError("slack reactions.add failed: already_reacted", code="already_reacted")
        current.add(name)

    async def remove_reaction(self, channel: str, ts: str, name: str) -> None:
        self.calls.append(("remove", channel, ts, name))
        self._maybe_fail("remove", name)
        current = self.reactions.setdefault((channel, ts), set())
        if name not in current:
            raise AlreadySatisfiedError("slack reactions.remove failed: no_reaction", code="no_reaction")
        current.discard(name)

    async def resolve_channel(self, channel: str) -> str:
        name = channel.lstrip("#")
        if CHANNEL_ID_PATTERN.match(name) or name in self.channels.values():
            return name
        if name in self.channels:
            return self.channels[name]
        raise PermanentExternalError(f"channel #{name} not found", code="channel_not_found")

    async def post_ephemeral(self, channel: str, user: str, text: str) -> None:
        self._maybe_fail("ephemeral", channel)
        self.ephemeral.append((channel, user, text))


class FakeQueue(TaskQueue):
    """Records enqueued jobs; can be told to fail or stall"""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.jobs: List[WebhookJob] = []
        self.fail = fail
        self.delay = delay

    async def enqueue(self, job: WebhookJob) -> JobHandle:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise QueueError("queue unavailable")
        self.jobs.append(job)
        return JobHandle(job_id=job.id, task_name=f"fake/{job.id}")


class FakeGitHubClient(GitHubClient):
    """GitHub client answering from canned data"""

    def __init__(
        self,
        profile: Optional[Dict[str, Any]] = None,
        pulls: Optional[Dict[Tuple[str, int], Dict[str, Any]]] = None,
        reviews: Optional[Dict[Tuple[str, int], List[Dict[str, Any]]]] = None,
        api_token: str = "",
    ):
        super().__init__(client_id="cid", client_secret="csecret", api_token=api_token)
        self.profile = profile if profile is not None else {"login": "alice", "id": 101}
        self.pulls = pulls or {}
        self.review_data = reviews or {}
        self.exchanged: List[str] = []

    async def close(self) -> None:
        pass

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        self.exchanged.append(code)
        return self.profile

    async def get_pull_request(self, repo_full_name: str, number: int) -> Dict[str, Any]:
        return self.pulls[(repo_full_name, number)]

    async def list_reviews(self, repo_full_name: str, number: int) -> List[Dict[str, Any]]:
        return list(self.review_data.get((repo_full_name, number), []))


# ============================================================================
# Payload builders
# ============================================================================

def pr_payload(
    action: str = "opened",
    number: int = 42,
    repo: str = "acme/widgets",
    author: str = "alice",
    title: str = "Add widget cache",
    body: Optional[str] = "",
    draft: bool = False,
    merged: bool = False,
) -> Dict[str, Any]:
    owner, name = repo.split("/")
    return {
        "action": action,
        "number": number,
        "pull_request": {
            "number": number,
            "title": title,
            "body": body,
            "html_url": f"https://github.com/{repo}/pull/{number}",
            "draft": draft,
            "merged": merged,
            "state": "closed" if action == "closed" else "open",
            "user": {"login": author, "id": 101},
            "additions": 12,
            "deletions": 3,
        },
        "repository": {"full_name": repo, "name": name, "owner": {"login": owner}},
    }


def review_payload(
    reviewer: str,
    state: str,
    submitted_at: str,
    review_id: int,
    action: str = "submitted",
    number: int = 42,
    repo: str = "acme/widgets",
) -> Dict[str, Any]:
    payload = pr_payload(action=action, number=number, repo=repo)
    payload["review"] = {
        "id": review_id,
        "state": state,
        "submitted_at": submitted_at,
        "user": {"login": reviewer, "id": 200 + review_id},
    }
    return payload


def github_job(event_type: str, payload: Dict[str, Any], **kwargs) -> WebhookJob:
    from prrelay.common.schemas import JobKind
    return WebhookJob(kind=JobKind.GITHUB_EVENT, event_type=event_type, payload=payload, **kwargs)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store():
    return RelayStore(MemoryDocumentStore())


@pytest.fixture
def chat():
    return FakeChatClient()


@pytest.fixture
def log():
    return LogContext.for_module("prrelay.tests")

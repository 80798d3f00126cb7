"""
Event Processor

Worker-side business logic. Dispatches a WebhookJob over a closed set of
job kinds, event types and actions; anything outside those sets is logged
and dropped rather than failing the job.

Handled:
- pull_request opened / ready_for_review: post to the resolved channel and
  start tracking the message
- pull_request_review submitted / dismissed: update the review ledger and
  reconcile reactions on every tracked message
- pull_request closed: record merged/closed and add the terminal reaction
- manual_link: a Slack message pasted a PR URL; track that message

Every path is safe to repeat. Posting is guarded by the (repo, PR, channel)
dedup lookup and reactions are recomputed from the ledger each time.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..common.errors import (
    PermanentExternalError,
    RepoDisabledError,
    TransientExternalError,
    ValidationError,
)
from ..common.github_client import GitHubClient
from ..common.log_context import LogContext
from ..common.schemas import (
    ClosedState,
    GitHubEventType,
    JobKind,
    ManualLinkPayload,
    MessageSource,
    PullRequestAction,
    PullRequestEvent,
    PullRequestInfo,
    PullRequestReviewEvent,
    PullRequestReviewLedger,
    ReviewAction,
    ReviewInfo,
    ReviewState,
    TrackedMessage,
    WebhookJob,
    utcnow,
)
from ..common.slack_client import ChatClient
from ..common.store import RelayStore
from .channel_resolver import parse_directives, resolve_channel
from .reaction_sync import ReactionSynchronizer

PR_URL_PATTERN = re.compile(r"https://github\.com/([^/\s]+)/([^/\s]+)/pull/(\d+)")

# (max changed lines, emoji), smallest first; larger PRs use the last entry
PR_SIZE_EMOJI = (
    (2, "ant"),
    (10, "mouse2"),
    (25, "rabbit2"),
    (50, "raccoon"),
    (100, "dog2"),
    (250, "llama"),
    (500, "pig2"),
    (1000, "gorilla"),
    (1500, "elephant"),
    (2000, "t-rex"),
    (9999, "whale2"),
)


@dataclass
class ProcessResult:
    """
    What the processor did with a job.

    status is one of:
        processed  state changed or a message was posted
        noop       nothing to do (duplicate, draft, untracked PR, ...)
        dropped    unknown kind/action, intentionally ignored
    """
    status: str
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PRLink:
    repo_full_name: str
    number: int
    url: str


def extract_pr_links(text: Optional[str]) -> List[PRLink]:
    """Find pull request URLs in free text, first occurrence order, deduplicated"""
    if not text:
        return []
    seen = set()
    links = []
    for match in PR_URL_PATTERN.finditer(text):
        owner, repo, number = match.group(1), match.group(2), int(match.group(3))
        key = (f"{owner}/{repo}".lower(), number)
        if key in seen or number <= 0:
            continue
        seen.add(key)
        links.append(PRLink(
            repo_full_name=f"{owner}/{repo}",
            number=number,
            url=f"https://github.com/{owner}/{repo}/pull/{number}",
        ))
    return links


def pr_size_emoji(lines_changed: int) -> str:
    """Animal emoji scaled to the number of changed lines"""
    for max_lines, emoji in PR_SIZE_EMOJI:
        if lines_changed <= max_lines:
            return emoji
    return PR_SIZE_EMOJI[-1][1]


def format_pr_message(
    pr: PullRequestInfo,
    author_mention: Optional[str],
    cc: Optional[str],
    custom_emoji: Optional[str] = None,
) -> str:
    """Slack mrkdwn announcement for a newly opened PR"""
    title = pr.title.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    author = author_mention or pr.user.login
    emoji = custom_emoji or pr_size_emoji(pr.additions + pr.deletions)
    text = f":{emoji}: <{pr.html_url}|#{pr.number} {title}> by {author}"
    if pr.additions or pr.deletions:
        text += f" (+{pr.additions} -{pr.deletions})"
    if cc:
        text += f"\ncc @{cc}"
    return text


def _parse_model(model, payload: Dict[str, Any]):
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid {model.__name__} payload: {e.error_count()} errors") from e


def _has_state(ledger: PullRequestReviewLedger) -> bool:
    return bool(ledger.reviewers) or ledger.closed_state is not None


def _review_state(value: str) -> Optional[ReviewState]:
    try:
        return ReviewState(value.lower())
    except ValueError:
        return None


class EventProcessor:
    """
    Args:
        store: Typed document store
        chat: Chat API collaborator
        synchronizer: Reaction reconciler
        github: Optional GitHub client; enables seeding state for pasted links
    """

    def __init__(
        self,
        store: RelayStore,
        chat: ChatClient,
        synchronizer: ReactionSynchronizer,
        github: Optional[GitHubClient] = None,
    ):
        self._store = store
        self._chat = chat
        self._sync = synchronizer
        self._github = github

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def process(self, job: WebhookJob, log: LogContext) -> ProcessResult:
        """
        Process one job.

        Raises:
            ValidationError: Payload does not match the event's shape
            ConfigurationError: No channel / repo disabled
            TransientExternalError: A collaborator may succeed on retry
            PermanentExternalError: A collaborator will never succeed
        """
        log = log.with_logger("prrelay.pipeline.processor")

        if job.kind == JobKind.GITHUB_EVENT:
            return await self._process_github_event(job, log)
        if job.kind == JobKind.MANUAL_LINK:
            payload = _parse_model(ManualLinkPayload, job.payload)
            return await self.handle_manual_link(payload, log)

        log.warning("Unknown job kind dropped", kind=job.kind)
        return ProcessResult("dropped", reason="unknown_kind")

    async def _process_github_event(self, job: WebhookJob, log: LogContext) -> ProcessResult:
        try:
            event_type = GitHubEventType(job.event_type)
        except ValueError:
            log.warning("Unsupported event type dropped", event_type=job.event_type)
            return ProcessResult("dropped", reason="unsupported_event")

        if event_type == GitHubEventType.PULL_REQUEST:
            event = _parse_model(PullRequestEvent, job.payload)
            log = log.bind(repo=event.repository.full_name, pr=event.pull_request.number)
            await self._require_enabled(event.repository.full_name)
            try:
                action = PullRequestAction(event.action)
            except ValueError:
                log.info("Pull request action ignored", action=event.action)
                return ProcessResult("dropped", reason="unsupported_action")

            if action in (PullRequestAction.OPENED, PullRequestAction.READY_FOR_REVIEW):
                return await self.handle_opened(event, log)
            if action == PullRequestAction.CLOSED:
                return await self.handle_closed(event, log)

        elif event_type == GitHubEventType.PULL_REQUEST_REVIEW:
            event = _parse_model(PullRequestReviewEvent, job.payload)
            log = log.bind(repo=event.repository.full_name, pr=event.pull_request.number)
            await self._require_enabled(event.repository.full_name)
            try:
                action = ReviewAction(event.action)
            except ValueError:
                log.info("Review action ignored", action=event.action)
                return ProcessResult("dropped", reason="unsupported_action")

            if action == ReviewAction.SUBMITTED:
                return await self.handle_review_submitted(event, log)
            if action == ReviewAction.DISMISSED:
                return await self.handle_review_dismissed(event, log)

        log.warning("Unhandled event dropped", event_type=job.event_type)
        return ProcessResult("dropped", reason="unhandled")

    # =========================================================================
    # Pull request opened
    # =========================================================================

    async def handle_opened(self, event: PullRequestEvent, log: LogContext) -> ProcessResult:
        pr = event.pull_request
        repo_name = event.repository.full_name

        if pr.draft:
            log.info("Draft pull request skipped")
            return ProcessResult("noop", reason="draft")

        directives = parse_directives(pr.body)
        if directives.skip:
            log.info("Pull request opted out of notification")
            return ProcessResult("noop", reason="skip_directive")

        repo = await self._store.get_repo(repo_name)
        if repo is not None and not repo.enabled:
            raise RepoDisabledError(f"repo {repo_name} is disabled")

        author = await self._store.find_verified_user_by_github(pr.user.login)
        resolution = resolve_channel(pr, repo, author, directives)
        channel_id = await self._chat.resolve_channel(resolution.channel)
        log = log.bind(channel=channel_id, channel_source=resolution.source)

        ledger = await self._store.get_ledger(repo_name, pr.number)

        existing = await self._store.find_message(repo_name, pr.number, channel_id)
        if existing is not None:
            log.info("Pull request already posted", message_id=existing.id)
            # An earlier attempt may have stopped after posting
            if _has_state(ledger):
                await self._reconcile([existing], ledger, log)
            return ProcessResult("noop", reason="duplicate", details={"message_id": existing.id})

        mention = f"<@{author.slack_user_id}>" if author is not None else None
        ref = await self._chat.post_message(
            channel_id,
            format_pr_message(pr, mention, directives.cc, directives.custom_emoji),
        )

        message = TrackedMessage(
            repo_full_name=repo_name,
            pr_number=pr.number,
            slack_channel=ref["channel"],
            slack_message_ts=ref["ts"],
            pr_url=pr.html_url,
            author=pr.user.login,
            source=MessageSource.BOT,
        )
        await self._store.save_message(message)
        log.info("Pull request posted", message_id=message.id, ts=message.slack_message_ts)

        if _has_state(ledger):
            await self._reconcile([message], ledger, log)
        return ProcessResult(
            "processed",
            reason="posted",
            details={"message_id": message.id, "channel": message.slack_channel},
        )

    # =========================================================================
    # Reviews
    # =========================================================================

    async def handle_review_submitted(self, event: PullRequestReviewEvent, log: LogContext) -> ProcessResult:
        review = event.review
        state = _review_state(review.state)
        log = log.bind(reviewer=review.user.login, review_state=review.state)
        if state is None:
            log.info("Review state carries no reaction")
            return ProcessResult("noop", reason="unsupported_review_state")

        ledger = await self._store.get_ledger(event.repository.full_name, event.pull_request.number)
        changed = ledger.record_review(
            review.user.login,
            state,
            review.submitted_at or utcnow(),
            review.id,
        )
        if changed:
            await self._store.save_ledger(ledger)
        else:
            log.info("Review already superseded or recorded")

        return await self._sync_tracked(event.repository.full_name, event.pull_request.number, ledger, log)

    async def handle_review_dismissed(self, event: PullRequestReviewEvent, log: LogContext) -> ProcessResult:
        review = event.review
        log = log.bind(reviewer=review.user.login)

        ledger = await self._store.get_ledger(event.repository.full_name, event.pull_request.number)
        current = ledger.reviewers.get(review.user.login)
        state = _review_state(review.state) or (current.state if current else ReviewState.COMMENTED)
        submitted_at = review.submitted_at or (current.submitted_at if current else utcnow())

        if ledger.dismiss_review(review.user.login, state, submitted_at, review.id):
            await self._store.save_ledger(ledger)
        else:
            log.info("Dismissal superseded by a newer review")

        return await self._sync_tracked(event.repository.full_name, event.pull_request.number, ledger, log)

    # =========================================================================
    # Closed / merged
    # =========================================================================

    async def handle_closed(self, event: PullRequestEvent, log: LogContext) -> ProcessResult:
        pr = event.pull_request
        ledger = await self._store.get_ledger(event.repository.full_name, pr.number)
        closed_state = ClosedState.MERGED if pr.merged else ClosedState.CLOSED

        if ledger.closed_state != closed_state:
            ledger.closed_state = closed_state
            ledger.updated_at = utcnow()
            await self._store.save_ledger(ledger)

        log.info("Pull request closed", closed_state=closed_state.value)
        return await self._sync_tracked(event.repository.full_name, pr.number, ledger, log)

    # =========================================================================
    # Manual links
    # =========================================================================

    async def handle_manual_link(self, payload: ManualLinkPayload, log: LogContext) -> ProcessResult:
        """
        Track a user's Slack message that mentions PR URLs.

        Each link is handled independently; transient failures are re-raised
        after every link has been attempted.
        """
        log = log.bind(channel=payload.slack_channel, ts=payload.slack_message_ts)
        links = extract_pr_links(payload.text)
        if not links:
            return ProcessResult("noop", reason="no_links")

        tracked = []
        retry_errors: List[TransientExternalError] = []
        for link in links:
            link_log = log.bind(repo=link.repo_full_name, pr=link.number)
            try:
                message_id = await self._track_link(link, payload, link_log)
            except TransientExternalError as e:
                link_log.warning("Manual link failed, will retry", error=e)
                retry_errors.append(e)
                continue
            except PermanentExternalError as e:
                link_log.error("Manual link failed permanently", error=e, code=e.code)
                continue
            if message_id:
                tracked.append(message_id)

        if retry_errors:
            raise TransientExternalError(
                f"{len(retry_errors)} of {len(links)} links failed: {retry_errors[0]}"
            )
        if not tracked:
            return ProcessResult("noop", reason="no_trackable_links")
        return ProcessResult("processed", reason="tracked", details={"message_ids": tracked})

    async def _track_link(self, link: PRLink, payload: ManualLinkPayload, log: LogContext) -> Optional[str]:
        repo = await self._store.get_repo(link.repo_full_name)
        if repo is None or not repo.enabled:
            log.info("Linked repo not registered or disabled")
            return None

        ledger = await self._store.get_ledger(link.repo_full_name, link.number)

        existing = await self._store.find_message(link.repo_full_name, link.number, payload.slack_channel)
        if existing is not None:
            log.info("Pull request already tracked in channel", message_id=existing.id)
            await self._reconcile([existing], ledger, log)
            return None

        if self._github is not None and self._github.can_read_api:
            ledger = await self.seed_ledger(link.repo_full_name, link.number, ledger, log)

        message = TrackedMessage(
            repo_full_name=link.repo_full_name,
            pr_number=link.number,
            slack_channel=payload.slack_channel,
            slack_message_ts=payload.slack_message_ts,
            pr_url=link.url,
            source=MessageSource.MANUAL,
            last_status=ledger.status_label(),
        )
        await self._store.save_message(message)
        log.info("Manual link tracked", message_id=message.id)

        await self._reconcile([message], ledger, log)
        return message.id

    async def seed_ledger(
        self,
        repo_full_name: str,
        number: int,
        ledger: PullRequestReviewLedger,
        log: LogContext,
    ) -> PullRequestReviewLedger:
        """Merge the PR's closed state and review history from the GitHub API"""
        pr = _parse_model(PullRequestInfo, await self._github.get_pull_request(repo_full_name, number))
        changed = False
        if pr.state == "closed" and ledger.closed_state is None:
            ledger.closed_state = ClosedState.MERGED if pr.merged else ClosedState.CLOSED
            changed = True

        for raw in await self._github.list_reviews(repo_full_name, number):
            try:
                review = ReviewInfo.model_validate(raw)
            except PydanticValidationError:
                continue
            if review.submitted_at is None:
                continue
            if review.state.lower() == "dismissed":
                current = ledger.reviewers.get(review.user.login)
                state = current.state if current else ReviewState.COMMENTED
                changed |= ledger.dismiss_review(review.user.login, state, review.submitted_at, review.id)
                continue
            state = _review_state(review.state)
            if state is not None:
                changed |= ledger.record_review(review.user.login, state, review.submitted_at, review.id)

        if changed:
            await self._store.save_ledger(ledger)
        log.debug("Ledger seeded from GitHub", reviewers=len(ledger.reviewers), changed=changed)
        return ledger

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_enabled(self, repo_full_name: str) -> None:
        """Unregistered repos pass; registered ones must be enabled"""
        repo = await self._store.get_repo(repo_full_name)
        if repo is not None and not repo.enabled:
            raise RepoDisabledError(f"repo {repo_full_name} is disabled")

    async def _sync_tracked(
        self,
        repo_full_name: str,
        number: int,
        ledger: PullRequestReviewLedger,
        log: LogContext,
    ) -> ProcessResult:
        messages = await self._store.list_messages(repo_full_name, number)
        if not messages:
            log.info("No tracked messages for pull request")
            return ProcessResult("noop", reason="untracked")

        await self._reconcile(messages, ledger, log)
        return ProcessResult(
            "processed",
            reason="synced",
            details={"messages": len(messages), "status": ledger.status_label()},
        )

    async def _reconcile(
        self,
        messages: List[TrackedMessage],
        ledger: PullRequestReviewLedger,
        log: LogContext,
    ) -> None:
        """Sync reactions, then record the summarized status on each message"""
        try:
            await self._sync.sync_all(messages, ledger, log)
        finally:
            status = ledger.status_label()
            for message in messages:
                if message.last_status != status:
                    message.last_status = status
                    await self._store.save_message(message)


def job_summary(job: WebhookJob) -> Tuple[Optional[str], Optional[Any]]:
    """Best-effort (repo, PR number) of a job's raw payload, for logging"""
    payload = job.payload if isinstance(job.payload, dict) else {}
    repository = payload.get("repository") or {}
    pull_request = payload.get("pull_request") or {}
    repo = repository.get("full_name") if isinstance(repository, dict) else None
    number = pull_request.get("number") if isinstance(pull_request, dict) else None
    if repo is None and job.kind == JobKind.MANUAL_LINK:
        links = extract_pr_links(payload.get("text"))
        if links:
            repo, number = links[0].repo_full_name, links[0].number
    return repo, number

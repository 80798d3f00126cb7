"""
Reaction Synchronizer

Keeps the reactions on every tracked Slack message consistent with a pull
request's review ledger.

The desired set is recomputed from scratch on every run:
- one review emoji per distinct state among non-dismissed reviewers
  (two reviewers in different states both show)
- the terminal emoji (merged or closed) once the PR is closed; it is never
  removed by a review sync

Each message is reconciled independently: review emoji that should not be
there are removed, desired emoji are added. Every emoji call stands alone;
"already present" / "already absent" is a no-op. Because the ledger, not the
triggering event, drives the result, out-of-order and duplicate deliveries
converge to the same reactions.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Set

from ..common.config import EmojiConfig
from ..common.errors import AlreadySatisfiedError, PermanentExternalError, TransientExternalError
from ..common.log_context import LogContext
from ..common.schemas import ClosedState, PullRequestReviewLedger, ReviewState, TrackedMessage
from ..common.slack_client import ChatClient


@dataclass
class MessageSyncResult:
    """Outcome of reconciling one tracked message"""
    message_id: str
    channel: str
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    transient_failures: List[str] = field(default_factory=list)
    permanent_failures: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.transient_failures and not self.permanent_failures


class ReactionSynchronizer:
    """
    Reconciles review/terminal reactions on tracked messages.

    Args:
        chat: Chat API collaborator
        emoji: Emoji names for each state
    """

    def __init__(self, chat: ChatClient, emoji: Optional[EmojiConfig] = None):
        self._chat = chat
        self._emoji = emoji or EmojiConfig()

    # ------------------------------------------------------------------ emoji

    def review_emoji(self, state: ReviewState) -> str:
        return {
            ReviewState.APPROVED: self._emoji.approved,
            ReviewState.CHANGES_REQUESTED: self._emoji.changes_requested,
            ReviewState.COMMENTED: self._emoji.commented,
        }[state]

    def terminal_emoji(self, state: ClosedState) -> str:
        return self._emoji.merged if state == ClosedState.MERGED else self._emoji.closed

    @property
    def review_universe(self) -> Set[str]:
        """Every emoji the synchronizer may manage as a review reaction"""
        return {self.review_emoji(state) for state in ReviewState}

    def desired_review_set(self, ledger: PullRequestReviewLedger) -> Set[str]:
        return {self.review_emoji(state) for state in ledger.active_states().values()}

    # ------------------------------------------------------------------- sync

    async def sync_message(
        self,
        message: TrackedMessage,
        ledger: PullRequestReviewLedger,
        log: LogContext,
    ) -> MessageSyncResult:
        """Reconcile one message against the ledger"""
        log = log.bind(message_id=message.id, channel=message.slack_channel)
        result = MessageSyncResult(message_id=message.id, channel=message.slack_channel)
        desired = self.desired_review_set(ledger)

        # Removing first keeps the window with conflicting states short.
        for name in sorted(self.review_universe - desired):
            await self._apply(False, message, name, result, log)

        wanted = sorted(desired)
        if ledger.closed_state is not None:
            terminal = self.terminal_emoji(ledger.closed_state)
            opposite = self.terminal_emoji(
                ClosedState.CLOSED if ledger.closed_state == ClosedState.MERGED else ClosedState.MERGED
            )
            if opposite != terminal:
                await self._apply(False, message, opposite, result, log)
            wanted.append(terminal)

        for name in wanted:
            await self._apply(True, message, name, result, log)

        log.debug(
            "Message reactions reconciled",
            desired=",".join(wanted) or "none",
            added=len(result.added),
            removed=len(result.removed),
        )
        return result

    async def sync_all(
        self,
        messages: List[TrackedMessage],
        ledger: PullRequestReviewLedger,
        log: LogContext,
    ) -> List[MessageSyncResult]:
        """
        Reconcile every tracked message of a PR.

        A failure on one message never stops the others. If any emoji call
        failed transiently, TransientExternalError is raised after all
        messages were attempted so the job is redelivered; the recompute makes
        the repeat safe.
        """
        results = []
        for message in messages:
            results.append(await self.sync_message(message, ledger, log))

        transient = [r for r in results if r.transient_failures]
        permanent = [r for r in results if r.permanent_failures]

        log.info(
            "Reaction sync completed",
            message_count=len(messages),
            review_state=ledger.status_label(),
            transient_failures=len(transient),
            permanent_failures=len(permanent),
        )

        if transient:
            raise TransientExternalError(
                f"reaction sync incomplete for {len(transient)} of {len(messages)} messages"
            )
        return results

    async def _apply(
        self,
        add: bool,
        message: TrackedMessage,
        name: str,
        result: MessageSyncResult,
        log: LogContext,
    ) -> None:
        operation = self._chat.add_reaction if add else self._chat.remove_reaction
        try:
            await operation(message.slack_channel, message.slack_message_ts, name)
        except AlreadySatisfiedError:
            result.unchanged.append(name)
            return
        except TransientExternalError as e:
            log.warning("Reaction call failed, will retry", emoji=name, add=add, error=e)
            result.transient_failures.append(name)
            return
        except PermanentExternalError as e:
            log.error(
                "Reaction call failed permanently",
                emoji=name,
                add=add,
                error=e,
                code=e.code,
            )
            result.permanent_failures.append(name)
            return

        if add:
            result.added.append(name)
        else:
            result.removed.append(name)

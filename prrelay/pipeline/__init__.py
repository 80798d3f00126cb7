"""
Worker Pipeline

Business logic that runs after a job is dequeued.

Components:
- EventProcessor: Dispatches jobs by kind, event type and action
- ChannelResolver: Picks the destination channel for a pull request
- ReactionSynchronizer: Reconciles reactions from the review ledger
- IdentityLinker: Slack <-> GitHub identity binding
- JobWorker: Deadline and ack/redeliver decision per delivery
"""

from .channel_resolver import PRDirectives, Resolution, parse_directives, resolve_channel
from .identity_linker import IdentityLinker, LinkStatus
from .processor import EventProcessor, ProcessResult, extract_pr_links
from .reaction_sync import ReactionSynchronizer
from .worker import JobWorker, WorkerOutcome

__all__ = [
    "PRDirectives",
    "Resolution",
    "parse_directives",
    "resolve_channel",
    "IdentityLinker",
    "LinkStatus",
    "EventProcessor",
    "ProcessResult",
    "extract_pr_links",
    "ReactionSynchronizer",
    "JobWorker",
    "WorkerOutcome",
]

"""
PR Relay Common Module

Shared infrastructure for the ingress server and the worker pipeline.
"""

from .config import RelayConfig, load_config
from .log_context import LogContext, configure_logging
from .store import RelayStore, DocumentStore, MemoryDocumentStore
from .slack_client import ChatClient, SlackClient
from .github_client import GitHubClient, GitHubIdentity
from .task_queue import TaskQueue, CloudTasksQueue, LocalTaskQueue

__all__ = [
    "RelayConfig",
    "load_config",
    "LogContext",
    "configure_logging",
    "RelayStore",
    "DocumentStore",
    "MemoryDocumentStore",
    "ChatClient",
    "SlackClient",
    "GitHubClient",
    "GitHubIdentity",
    "TaskQueue",
    "CloudTasksQueue",
    "LocalTaskQueue",
]

"""
Configuration Management for PR Relay

Loads configuration from ~/.prrelay/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger("prrelay.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".prrelay"
CONFIG_PATH = CONFIG_DIR / "config.json"
DATA_DIR = CONFIG_DIR / "data"

QUEUE_MODES = ("local", "cloud_tasks")
STORE_BACKENDS = ("memory", "json")


@dataclass
class ServerConfig:
    """HTTP server and deadline settings"""
    port: int = 8080
    base_url: str = "http://localhost:8080"
    admin_key: str = ""
    log_level: str = "info"
    enqueue_timeout: float = 2.0  # seconds; fast-ingress deadline
    worker_timeout: float = 300.0  # seconds; worker deadline
    slack_timestamp_max_age: int = 300  # seconds; replay window


@dataclass
class GitHubConfig:
    """GitHub webhook, OAuth and API configuration"""
    webhook_secret: str = ""
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    api_token: str = ""  # optional; enables PR metadata reads
    api_url: str = "https://api.github.com"
    oauth_url: str = "https://github.com/login/oauth"


@dataclass
class SlackConfig:
    """Slack bot configuration"""
    bot_token: str = ""
    signing_secret: str = ""
    api_url: str = "https://slack.com/api"


@dataclass
class QueueConfig:
    """Task queue configuration"""
    mode: str = "local"  # "local" or "cloud_tasks"
    worker_url: str = ""
    worker_secret: str = ""
    max_attempts: int = 10
    project: str = ""
    location: str = "europe-west1"
    queue: str = "webhook-processing"
    access_token: str = ""  # fixed token; Application Default Credentials when empty
    api_url: str = "https://cloudtasks.googleapis.com/v2"


@dataclass
class StoreConfig:
    """Document store configuration"""
    backend: str = "memory"  # "memory" or "json"
    path: str = str(DATA_DIR / "store.json")


@dataclass
class EmojiConfig:
    """Slack emoji names (without colons) used as status reactions"""
    approved: str = "white_check_mark"
    changes_requested: str = "arrows_counterclockwise"
    commented: str = "speech_balloon"
    merged: str = "tada"
    closed: str = "x"


@dataclass
class RelayConfig:
    """Main PR relay configuration"""
    server: ServerConfig = field(default_factory=ServerConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    slack: SlackConfig = field(default_factory=SlackConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    emoji: EmojiConfig = field(default_factory=EmojiConfig)


def _parse_section(cls, data: dict, key: str):
    """Build a section dataclass from ``data[key]``, ignoring unknown keys"""
    section = data.get(key, {}) or {}
    defaults = cls()
    values = {}
    for name in defaults.__dataclass_fields__:
        if name in section:
            values[name] = type(getattr(defaults, name))(section[name])
    return cls(**values)


def load_config() -> RelayConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.prrelay/config.json)
    3. Default values
    """
    config = RelayConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.server = _parse_section(ServerConfig, data, "server")
            config.github = _parse_section(GitHubConfig, data, "github")
            config.slack = _parse_section(SlackConfig, data, "slack")
            config.queue = _parse_section(QueueConfig, data, "queue")
            config.store = _parse_section(StoreConfig, data, "store")
            config.emoji = _parse_section(EmojiConfig, data, "emoji")
        except (json.JSONDecodeError, IOError, ValueError, TypeError) as e:
            logger.warning("Failed to load config file %s: %s", CONFIG_PATH, e)

    # Environment variable overrides
    _env_map = {
        "PORT": (config.server, "port", int),
        "BASE_URL": (config.server, "base_url", str),
        "API_ADMIN_KEY": (config.server, "admin_key", str),
        "LOG_LEVEL": (config.server, "log_level", str),
        "ENQUEUE_TIMEOUT": (config.server, "enqueue_timeout", float),
        "WEBHOOK_PROCESSING_TIMEOUT": (config.server, "worker_timeout", float),
        "SLACK_TIMESTAMP_MAX_AGE": (config.server, "slack_timestamp_max_age", int),
        "GITHUB_WEBHOOK_SECRET": (config.github, "webhook_secret", str),
        "GITHUB_OAUTH_CLIENT_ID": (config.github, "oauth_client_id", str),
        "GITHUB_OAUTH_CLIENT_SECRET": (config.github, "oauth_client_secret", str),
        "GITHUB_TOKEN": (config.github, "api_token", str),
        "GITHUB_API_URL": (config.github, "api_url", str),
        "SLACK_BOT_TOKEN": (config.slack, "bot_token", str),
        "SLACK_SIGNING_SECRET": (config.slack, "signing_secret", str),
        "QUEUE_MODE": (config.queue, "mode", str),
        "WEBHOOK_WORKER_URL": (config.queue, "worker_url", str),
        "WORKER_SECRET": (config.queue, "worker_secret", str),
        "QUEUE_MAX_ATTEMPTS": (config.queue, "max_attempts", int),
        "GOOGLE_CLOUD_PROJECT": (config.queue, "project", str),
        "GCP_REGION": (config.queue, "location", str),
        "CLOUD_TASKS_QUEUE": (config.queue, "queue", str),
        "CLOUD_TASKS_ACCESS_TOKEN": (config.queue, "access_token", str),
        "STORE_BACKEND": (config.store, "backend", str),
        "STORE_PATH": (config.store, "path", str),
    }
    for env_var, (section, attr, cast) in _env_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(section, attr, cast(val))

    return config


def validate_config(config: RelayConfig) -> List[str]:
    """
    Check that every value the chosen modes need is present.

    Returns:
        List of human-readable problems (empty when the config is usable)
    """
    problems = []

    required = {
        "github.webhook_secret": config.github.webhook_secret,
        "slack.bot_token": config.slack.bot_token,
        "slack.signing_secret": config.slack.signing_secret,
        "server.admin_key": config.server.admin_key,
        "queue.worker_secret": config.queue.worker_secret,
    }
    for name, value in required.items():
        if not value:
            problems.append(f"{name} is required")

    if config.queue.mode not in QUEUE_MODES:
        problems.append(f"queue.mode must be one of {QUEUE_MODES}, got {config.queue.mode!r}")
    elif config.queue.mode == "cloud_tasks":
        for name in ("worker_url", "project"):
            if not getattr(config.queue, name):
                problems.append(f"queue.{name} is required for cloud_tasks mode")

    if config.store.backend not in STORE_BACKENDS:
        problems.append(f"store.backend must be one of {STORE_BACKENDS}, got {config.store.backend!r}")

    if config.queue.max_attempts <= 0:
        problems.append("queue.max_attempts must be positive")
    if config.server.enqueue_timeout <= 0:
        problems.append("server.enqueue_timeout must be positive")
    if config.server.worker_timeout <= 0:
        problems.append("server.worker_timeout must be positive")
    if config.server.slack_timestamp_max_age <= 0:
        problems.append("server.slack_timestamp_max_age must be positive")

    return problems


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    DATA_DIR.mkdir(parents=True, exist_ok=True)

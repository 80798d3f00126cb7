"""Tests for config loading, env overrides and validation."""

import json
import os
from unittest.mock import patch


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        from prrelay.common.config import load_config
        with patch("prrelay.common.config.CONFIG_PATH", tmp_path / "missing.json"), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()

        assert cfg.queue.mode == "local"
        assert cfg.queue.max_attempts == 10
        assert cfg.server.enqueue_timeout == 2.0
        assert cfg.server.worker_timeout == 300.0
        assert cfg.server.slack_timestamp_max_age == 300
        assert cfg.emoji.approved == "white_check_mark"
        assert cfg.emoji.merged == "tada"

    def test_load_from_file(self, tmp_path):
        from prrelay.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "server": {"port": 9000, "enqueue_timeout": 1},
            "slack": {"bot_token": "xoxb-file"},
            "emoji": {"approved": "shipit"},
            "queue": {"mode": "cloud_tasks", "unknown_key": "ignored"},
        }))

        with patch("prrelay.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()

        assert cfg.server.port == 9000
        assert cfg.server.enqueue_timeout == 1.0
        assert cfg.slack.bot_token == "xoxb-file"
        assert cfg.emoji.approved == "shipit"
        assert cfg.emoji.commented == "speech_balloon"
        assert cfg.queue.mode == "cloud_tasks"

    def test_env_overrides_file(self, tmp_path):
        from prrelay.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"slack": {"bot_token": "xoxb-file"}}))

        env = {
            "SLACK_BOT_TOKEN": "xoxb-env",
            "GITHUB_WEBHOOK_SECRET": "gh",
            "WORKER_SECRET": "ws",
            "QUEUE_MAX_ATTEMPTS": "4",
            "ENQUEUE_TIMEOUT": "0.5",
        }
        with patch("prrelay.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, env, clear=True):
            cfg = load_config()

        assert cfg.slack.bot_token == "xoxb-env"
        assert cfg.github.webhook_secret == "gh"
        assert cfg.queue.worker_secret == "ws"
        assert cfg.queue.max_attempts == 4
        assert cfg.server.enqueue_timeout == 0.5

    def test_corrupt_file_falls_back_to_defaults(self, tmp_path):
        from prrelay.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")

        with patch("prrelay.common.config.CONFIG_PATH", config_file), \
             patch.dict(os.environ, {}, clear=True):
            cfg = load_config()

        assert cfg.server.port == 8080


class TestValidateConfig:
    def _complete(self):
        from prrelay.common.config import RelayConfig
        cfg = RelayConfig()
        cfg.github.webhook_secret = "gh"
        cfg.slack.bot_token = "xoxb"
        cfg.slack.signing_secret = "ss"
        cfg.server.admin_key = "ak"
        cfg.queue.worker_secret = "ws"
        return cfg

    def test_complete_local_config(self):
        from prrelay.common.config import validate_config
        assert validate_config(self._complete()) == []

    def test_missing_secrets_reported(self):
        from prrelay.common.config import RelayConfig, validate_config
        problems = validate_config(RelayConfig())
        assert "github.webhook_secret is required" in problems
        assert "slack.signing_secret is required" in problems

    def test_cloud_tasks_requires_target(self):
        from prrelay.common.config import validate_config
        cfg = self._complete()
        cfg.queue.mode = "cloud_tasks"
        problems = validate_config(cfg)
        assert "queue.worker_url is required for cloud_tasks mode" in problems
        assert "queue.project is required for cloud_tasks mode" in problems

    def test_unknown_modes(self):
        from prrelay.common.config import validate_config
        cfg = self._complete()
        cfg.queue.mode = "sqs"
        cfg.store.backend = "redis"
        problems = validate_config(cfg)
        assert any(p.startswith("queue.mode") for p in problems)
        assert any(p.startswith("store.backend") for p in problems)

    def test_non_positive_limits(self):
        from prrelay.common.config import validate_config
        cfg = self._complete()
        cfg.queue.max_attempts = 0
        cfg.server.enqueue_timeout = 0
        problems = validate_config(cfg)
        assert "queue.max_attempts must be positive" in problems
        assert "server.enqueue_timeout must be positive" in problems

"""Tests for GitHub and Slack request signature verification."""

import hashlib
import hmac
import json

import pytest


SECRET = "It's a Secret to Everybody"
BODY = b'{"action":"opened","repository":{"full_name":"acme/widgets"}}'


def _gh_sig(body=BODY, secret=SECRET):
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _slack_sig(body, ts, secret=SECRET):
    base = f"v0:{ts}:".encode() + body
    return "v0=" + hmac.new(secret.encode(), base, hashlib.sha256).hexdigest()


class TestGitHubSignature:
    def test_known_vector(self):
        from prrelay.ingress.handlers import GitHubHandler
        # Published example from GitHub's webhook documentation
        handler = GitHubHandler(webhook_secret=SECRET)
        handler.verify_signature(
            b"Hello, World!",
            "sha256=757107ea0eb2509fc211221cce984b8a37570b6d7586c22c46f4379c8b043e17",
        )

    def test_valid_signature(self):
        from prrelay.ingress.handlers import GitHubHandler
        GitHubHandler(webhook_secret=SECRET).verify_signature(BODY, _gh_sig())

    @pytest.mark.parametrize("signature", [
        "",
        "sha1=abcdef",
        "sha256=" + "0" * 64,
        _gh_sig(secret="wrong"),
    ])
    def test_rejects_bad_signature(self, signature):
        from prrelay.common.errors import AuthenticationError
        from prrelay.ingress.handlers import GitHubHandler
        with pytest.raises(AuthenticationError):
            GitHubHandler(webhook_secret=SECRET).verify_signature(BODY, signature)

    def test_rejects_tampered_body(self):
        from prrelay.common.errors import AuthenticationError
        from prrelay.ingress.handlers import GitHubHandler
        with pytest.raises(AuthenticationError):
            GitHubHandler(webhook_secret=SECRET).verify_signature(BODY + b" ", _gh_sig())

    def test_empty_secret_rejects_everything(self):
        from prrelay.common.errors import AuthenticationError
        from prrelay.ingress.handlers import GitHubHandler
        with pytest.raises(AuthenticationError):
            GitHubHandler(webhook_secret="").verify_signature(BODY, _gh_sig(secret=""))

    def test_per_repo_secret_overrides_global(self):
        from prrelay.common.errors import AuthenticationError
        from prrelay.ingress.handlers import GitHubHandler
        handler = GitHubHandler(webhook_secret="global")
        handler.verify_signature(BODY, _gh_sig(secret="repo-secret"), secret="repo-secret")
        with pytest.raises(AuthenticationError):
            handler.verify_signature(BODY, _gh_sig(secret="global"), secret="repo-secret")


class TestGitHubPayload:
    def test_builds_job_for_supported_event(self):
        from prrelay.common.schemas import JobKind
        from prrelay.ingress.handlers import GitHubHandler
        handler = GitHubHandler(webhook_secret=SECRET, max_attempts=5)
        job = handler.parse_event(json.loads(BODY), event_type="pull_request", delivery_id="d-1")
        assert job.kind == JobKind.GITHUB_EVENT
        assert job.event_type == "pull_request"
        assert job.delivery_id == "d-1"
        assert job.max_attempts == 5

    def test_unsupported_event_ignored(self):
        from prrelay.ingress.handlers import GitHubHandler
        assert GitHubHandler(webhook_secret=SECRET).parse_event({}, event_type="push") is None

    @pytest.mark.parametrize("payload", [
        [],
        {"repository": {"full_name": "acme/widgets"}},
        {"action": "opened"},
        {"action": "opened", "repository": {}},
    ])
    def test_shape_check(self, payload):
        from prrelay.common.errors import ValidationError
        from prrelay.ingress.handlers import GitHubHandler
        with pytest.raises(ValidationError):
            GitHubHandler(webhook_secret=SECRET).parse_event(payload, event_type="pull_request")


class TestSlackSignature:
    NOW = 1714564800

    def _handler(self, secret=SECRET):
        from prrelay.ingress.handlers import SlackHandler
        return SlackHandler(signing_secret=secret, max_age=300, clock=lambda: self.NOW)

    def test_valid_signature(self):
        ts = str(self.NOW)
        self._handler().verify_signature(BODY, _slack_sig(BODY, ts), ts)

    def test_stale_timestamp(self):
        from prrelay.common.errors import AuthenticationError
        ts = str(self.NOW - 301)
        with pytest.raises(AuthenticationError):
            self._handler().verify_signature(BODY, _slack_sig(BODY, ts), ts)

    def test_future_timestamp(self):
        from prrelay.common.errors import AuthenticationError
        ts = str(self.NOW + 301)
        with pytest.raises(AuthenticationError):
            self._handler().verify_signature(BODY, _slack_sig(BODY, ts), ts)

    @pytest.mark.parametrize("signature,timestamp", [
        ("", "1714564800"),
        ("v0=abc", ""),
        ("v0=abc", "not-a-number"),
    ])
    def test_missing_or_malformed_headers(self, signature, timestamp):
        from prrelay.common.errors import AuthenticationError
        with pytest.raises(AuthenticationError):
            self._handler().verify_signature(BODY, signature, timestamp)

    def test_wrong_secret(self):
        from prrelay.common.errors import AuthenticationError
        ts = str(self.NOW)
        with pytest.raises(AuthenticationError):
            self._handler().verify_signature(BODY, _slack_sig(BODY, ts, secret="other"), ts)

    def test_empty_secret(self):
        from prrelay.common.errors import AuthenticationError
        ts = str(self.NOW)
        with pytest.raises(AuthenticationError):
            self._handler(secret="").verify_signature(BODY, _slack_sig(BODY, ts, secret=""), ts)


class TestSlackEvents:
    def _event(self, **event):
        base = {"type": "message", "channel": "C0RANDOM1", "user": "U2", "ts": "1714565000.000100"}
        base.update(event)
        return {"type": "event_callback", "team_id": "T1", "event_id": "Ev1", "event": base}

    def test_message_with_pr_link_becomes_job(self):
        from prrelay.common.schemas import JobKind
        from prrelay.ingress.handlers import SlackHandler
        job = SlackHandler(signing_secret=SECRET).parse_event(
            self._event(text="PTAL <https://github.com/acme/widgets/pull/42>")
        )
        assert job.kind == JobKind.MANUAL_LINK
        assert job.payload["slack_channel"] == "C0RANDOM1"
        assert job.payload["slack_team_id"] == "T1"
        assert job.delivery_id == "Ev1"

    @pytest.mark.parametrize("extra", [
        {"text": "no links here"},
        {"text": "https://github.com/acme/widgets/pull/42", "bot_id": "B1"},
        {"text": "https://github.com/acme/widgets/pull/42", "subtype": "message_changed"},
        {"text": "https://github.com/acme/widgets/issues/42"},
    ])
    def test_ignored_messages(self, extra):
        from prrelay.ingress.handlers import SlackHandler
        assert SlackHandler(signing_secret=SECRET).parse_event(self._event(**extra)) is None

    def test_url_verification(self):
        from prrelay.ingress.handlers import SlackHandler
        handler = SlackHandler(signing_secret=SECRET)
        data = {"type": "url_verification", "challenge": "abc123"}
        assert handler.is_url_verification(data)
        assert handler.get_challenge(data) == "abc123"
        assert handler.parse_event(data) is None

    def test_parse_command(self):
        from prrelay.common.errors import ValidationError
        from prrelay.ingress.handlers import SlackHandler
        handler = SlackHandler(signing_secret=SECRET)
        cmd = handler.parse_command({
            "command": "/notify-channel", "text": " <#C0PLATFORM|platform> ",
            "team_id": "T1", "user_id": "U1", "channel_id": "C0RANDOM1",
        })
        assert cmd.argument == "<#C0PLATFORM|platform>"
        with pytest.raises(ValidationError):
            handler.parse_command({"command": "/notify-link"})

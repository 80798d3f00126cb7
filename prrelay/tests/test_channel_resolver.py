"""Tests for PR description directives and channel precedence."""

import pytest


def _pr(body=None, login="alice"):
    from prrelay.common.schemas import GitHubUserRef, PullRequestInfo
    return PullRequestInfo(number=42, title="t", body=body, user=GitHubUserRef(login=login))


def _user(channel="C0ALICE1", verified=True):
    from prrelay.common.schemas import User, Verification
    return User(
        slack_team_id="T1",
        slack_user_id="U1",
        github_username="alice",
        default_channel=channel,
        verification=Verification.VERIFIED if verified else Verification.UNVERIFIED,
    )


def _repo(channel="#widgets-eng"):
    from prrelay.common.schemas import Repo
    return Repo(full_name="acme/widgets", default_channel=channel)


class TestParseDirectives:
    def test_empty_description(self):
        from prrelay.pipeline.channel_resolver import parse_directives
        d = parse_directives(None)
        assert d.channel is None and not d.skip and d.cc is None

    def test_slack_channel_annotation(self):
        from prrelay.pipeline.channel_resolver import parse_directives
        assert parse_directives("Fixes a bug\n@slack-channel: #platform").channel == "platform"

    def test_annotation_without_hash(self):
        from prrelay.pipeline.channel_resolver import parse_directives
        assert parse_directives("@slack-channel: platform").channel == "platform"

    def test_review_directive_components(self):
        from prrelay.pipeline.channel_resolver import parse_directives
        d = parse_directives("!review: #backend @carol")
        assert d.channel == "backend"
        assert d.cc == "carol"
        assert not d.skip

    def test_custom_emoji_directive(self):
        from prrelay.pipeline.channel_resolver import parse_directives
        d = parse_directives("!review: :rocket: #backend")
        assert d.custom_emoji == "rocket"
        assert d.channel == "backend"
        assert parse_directives("!review: :: #backend").custom_emoji is None

    def test_reviews_plural_and_case(self):
        from prrelay.pipeline.channel_resolver import parse_directives
        assert parse_directives("!REVIEWS: #ops").channel == "ops"

    @pytest.mark.parametrize("text", ["!review-skip", "!review: skip", "!review: no"])
    def test_skip_forms(self, text):
        from prrelay.pipeline.channel_resolver import parse_directives
        assert parse_directives(f"WIP\n{text}").skip

    def test_last_directive_wins(self):
        from prrelay.pipeline.channel_resolver import parse_directives
        d = parse_directives("@slack-channel: #first\nmore text\n!review: #second")
        assert d.channel == "second"


class TestResolveChannel:
    def test_annotation_first(self):
        from prrelay.pipeline.channel_resolver import resolve_channel
        r = resolve_channel(_pr("@slack-channel: #platform"), _repo(), _user())
        assert (r.channel, r.source) == ("platform", "annotation")

    def test_verified_user_default_second(self):
        from prrelay.pipeline.channel_resolver import resolve_channel
        r = resolve_channel(_pr(), _repo(), _user())
        assert (r.channel, r.source) == ("C0ALICE1", "user_default")

    def test_unverified_user_default_skipped(self):
        from prrelay.pipeline.channel_resolver import resolve_channel
        r = resolve_channel(_pr(), _repo(), _user(verified=False))
        assert (r.channel, r.source) == ("#widgets-eng", "repo_default")

    def test_verified_user_without_default_falls_through(self):
        from prrelay.pipeline.channel_resolver import resolve_channel
        r = resolve_channel(_pr(), _repo(), _user(channel=None))
        assert r.source == "repo_default"

    def test_nothing_configured_raises(self):
        from prrelay.common.errors import ConfigurationError, NoChannelConfiguredError
        from prrelay.pipeline.channel_resolver import resolve_channel
        with pytest.raises(NoChannelConfiguredError) as exc:
            resolve_channel(_pr(), None, None)
        assert isinstance(exc.value, ConfigurationError)

    def test_repo_without_channel_raises(self):
        from prrelay.common.errors import NoChannelConfiguredError
        from prrelay.pipeline.channel_resolver import resolve_channel
        with pytest.raises(NoChannelConfiguredError):
            resolve_channel(_pr(), _repo(channel=None), None)
